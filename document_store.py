"""
keyed document store contract used by the referral tree, plus an in-memory
implementation.

every mutating primitive is atomic on a single document. the in-memory
store gets that for free: each coroutine finishes its mutation without
awaiting in between, so under asyncio nothing can interleave with it.
"""

import copy
from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

from models import ReadOptions, WriteOptions

Document = Dict[str, Any]


class DuplicateKeyError(Exception):
    def __init__(self, key: str):
        super().__init__(f"Document {key} already exists.")
        self.key = key


@runtime_checkable
class DocumentCollection(Protocol):
    async def find(
        self,
        key: str,
        fields: Optional[Iterable[str]] = None,
        options: Optional[ReadOptions] = None,
    ) -> Optional[Document]:
        """return the document (narrowed to `fields` plus id) or None."""
        ...

    async def insert(self, document: Document, options: Optional[WriteOptions] = None) -> str:
        """insert a new document, raise DuplicateKeyError if the id is taken."""
        ...

    async def push_child(
        self, key: str, level: int, entry: Document, options: Optional[WriteOptions] = None
    ) -> Optional[Document]:
        """append `entry` to children[level]; return the post-update document."""
        ...

    async def set_payload(
        self, key: str, payload: str, options: Optional[WriteOptions] = None
    ) -> Optional[Document]:
        """overwrite payload; return the post-update document."""
        ...

    async def set_child_payload(
        self,
        key: str,
        level: int,
        child_id: str,
        payload: str,
        options: Optional[WriteOptions] = None,
    ) -> Optional[Document]:
        """
        overwrite the payload of the element with id `child_id` inside
        children[level]. returns None if the document or the element is missing.
        """
        ...

    async def pull_child(
        self, key: str, level: int, child_id: str, options: Optional[WriteOptions] = None
    ) -> bool:
        """remove the element with id `child_id` from children[level] only."""
        ...

    async def delete(self, key: str, options: Optional[WriteOptions] = None) -> Optional[Document]:
        """delete the document and return it, or None if it did not exist."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    def collection(self, name: str) -> DocumentCollection:
        ...


def project(doc: Document, fields: Optional[Iterable[str]]) -> Document:
    """narrow a document to `fields`; the id is always kept."""
    if fields is None:
        return doc
    wanted = set(fields) | {"id"}
    return {k: v for k, v in doc.items() if k in wanted}


class InMemoryCollection:
    def __init__(self, name: str):
        self.name = name
        self._docs: Dict[str, Document] = {}

    async def find(self, key, fields=None, options=None):
        doc = self._docs.get(key)
        if doc is None:
            return None
        return copy.deepcopy(project(doc, fields))

    async def insert(self, document, options=None):
        key = document["id"]
        if key in self._docs:
            raise DuplicateKeyError(key)
        self._docs[key] = copy.deepcopy(document)
        return key

    async def push_child(self, key, level, entry, options=None):
        doc = self._docs.get(key)
        if doc is None:
            return None
        doc["children"][level].append(copy.deepcopy(entry))
        return copy.deepcopy(doc)

    async def set_payload(self, key, payload, options=None):
        doc = self._docs.get(key)
        if doc is None:
            return None
        doc["payload"] = payload
        return copy.deepcopy(doc)

    async def set_child_payload(self, key, level, child_id, payload, options=None):
        doc = self._docs.get(key)
        if doc is None:
            return None
        for entry in doc["children"][level]:
            if entry["id"] == child_id:
                entry["payload"] = payload
                return copy.deepcopy(doc)
        return None

    async def pull_child(self, key, level, child_id, options=None):
        doc = self._docs.get(key)
        if doc is None:
            return False
        before = doc["children"][level]
        after = [entry for entry in before if entry["id"] != child_id]
        doc["children"][level] = after
        return len(after) != len(before)

    async def delete(self, key, options=None):
        return self._docs.pop(key, None)


class InMemoryDocumentStore:
    """dict-backed store; one InMemoryCollection per name."""

    def __init__(self):
        self._collections: Dict[str, InMemoryCollection] = {}

    def collection(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]
