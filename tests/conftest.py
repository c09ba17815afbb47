import asyncio

import pytest

from document_store import InMemoryDocumentStore
from errors import StoreUnavailable
from referral_engine import ReferralTree


class FlakyCollection:
    """
    wraps an in-memory collection:
      - yields to the event loop before every call, so concurrent writes interleave
      - records (method, key) of every call
      - raises StoreUnavailable for the (method, key) pairs listed in fail_on
    """

    def __init__(self, inner, calls, fail_on):
        self.inner = inner
        self.calls = calls
        self.fail_on = fail_on

    def __getattr__(self, name):
        method = getattr(self.inner, name)

        async def call(target, *args, **kwargs):
            key = target["id"] if isinstance(target, dict) else target
            self.calls.append((name, key))
            await asyncio.sleep(0)
            if (name, key) in self.fail_on:
                raise StoreUnavailable(f"injected failure: {name} {key}")
            return await method(target, *args, **kwargs)

        return call


class FlakyStore:
    def __init__(self):
        self.inner = InMemoryDocumentStore()
        self.calls = []
        self.fail_on = set()

    def collection(self, name):
        return FlakyCollection(self.inner.collection(name), self.calls, self.fail_on)

    def writes(self):
        return [c for c in self.calls if c[0] != "find"]


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def tree(store):
    return ReferralTree(store)


@pytest.fixture
def docs(store):
    """raw collection behind the tree, bypassing injected failures."""
    return store.inner.collection("referrals")


async def build_chain(tree, *ids, payload_prefix="p_"):
    """first id is a root, every next one is created under the previous one."""
    parent = None
    for referral_id in ids:
        await tree.create_referral(referral_id, payload_prefix + referral_id, parent)
        parent = referral_id


def child_ids(doc, level):
    return [entry["id"] for entry in doc["children"][level]]
