import asyncio
from typing import Any, Awaitable, List, Optional, Tuple

import structlog

from document_store import DocumentStore, DuplicateKeyError
from errors import ParentNotFound, PartialFanoutFailure, ReferralConflict, ReferralNotFound
from models import (
    BatchResult,
    Descendant,
    FanoutOutcome,
    ReadOptions,
    ReferralNode,
    WriteOptions,
)

logger = structlog.get_logger()

DEFAULT_COLLECTION = "referrals"
DEFAULT_MAX_LEVELS = 3

# (level, ancestor_id, pending write against that ancestor)
FanoutTarget = Tuple[int, str, Awaitable[Any]]


def empty_ancestors(max_levels: int) -> List[Optional[str]]:
    return [None] * (max_levels + 1)


def empty_children(max_levels: int) -> List[list]:
    return [[] for _ in range(max_levels + 1)]


def derive_ancestors(parent_id: str, parent_ancestors, max_levels: int = DEFAULT_MAX_LEVELS):
    """
    ancestors of a new child of `parent_id`, as [None, L1, L2, ..., Lmax].

    level 1 is the parent itself. every ancestor of the parent moves one
    level further away from the child, so parent's L1 becomes child's L2 and
    so on. whatever would land past max_levels is dropped.
    """
    ancestors = empty_ancestors(max_levels)
    ancestors[1] = parent_id

    for level in range(2, max_levels + 1):
        parent_level = level - 1
        if parent_level < len(parent_ancestors) and parent_ancestors[parent_level]:
            ancestors[level] = parent_ancestors[parent_level]

    return ancestors


def ancestor_levels(ancestors, max_levels: int = DEFAULT_MAX_LEVELS) -> List[Tuple[int, str]]:
    """present (level, ancestor_id) pairs, level ascending, never past max_levels."""
    return [
        (level, ancestor_id)
        for level, ancestor_id in enumerate(ancestors[: max_levels + 1])
        if level > 0 and ancestor_id
    ]


def _read_options(options: Optional[WriteOptions]) -> Optional[ReadOptions]:
    if options is None:
        return None
    return ReadOptions(session=options.session)


class ReferralTree:
    """
    referral tree denormalized into a keyed document store.

    every node keeps copies of its descendants per level (up to max_levels),
    so each insert / payload update / delete also writes to up to max_levels
    ancestor documents. those fan-out writes are dispatched concurrently and
    awaited together; there is no cross-document transaction and no rollback.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str = DEFAULT_COLLECTION,
        max_levels: int = DEFAULT_MAX_LEVELS,
    ):
        if max_levels < 1:
            raise ValueError(f"max_levels must be >= 1, got {max_levels}")
        self.max_levels = max_levels
        self.collection_name = collection
        self._collection = store.collection(collection)

    def _new_document(self, referral_id: str, payload: str, ancestors) -> dict:
        return {
            "id": referral_id,
            "payload": payload,
            "ancestors": ancestors,
            "children": empty_children(self.max_levels),
        }

    async def _insert(self, doc: dict, options: Optional[WriteOptions]) -> None:
        try:
            await self._collection.insert(doc, options)
        except DuplicateKeyError as e:
            raise ReferralConflict(doc["id"]) from e

    async def create_referral(
        self,
        referral_id: str,
        payload: str,
        parent_id: Optional[str] = None,
        options: Optional[WriteOptions] = None,
    ) -> ReferralNode:
        """
        create a referral, optionally under `parent_id`.

        raises ReferralConflict if the id is taken, ParentNotFound if the
        parent does not exist, PartialFanoutFailure if the node was created
        but some ancestor copies (levels 2..max) could not be written.
        """
        if parent_id is None:
            doc = self._new_document(referral_id, payload, empty_ancestors(self.max_levels))
            await self._insert(doc, options)
            logger.info("referral_created", referral_id=referral_id, parent_id=None)
            return ReferralNode.from_document(doc)

        # 0) a taken id would otherwise leave a stray copy on the parent
        existing = await self._collection.find(
            referral_id, fields=("id",), options=_read_options(options)
        )
        if existing is not None:
            raise ReferralConflict(referral_id)

        # 1) append to the parent's level 1 and get the parent back
        entry = {"id": referral_id, "payload": payload}
        parent = await self._collection.push_child(parent_id, 1, entry, options)
        if parent is None:
            raise ParentNotFound(parent_id)

        # 2) parent's ancestors shift one level down for the child
        ancestors = derive_ancestors(parent_id, parent.get("ancestors") or [], self.max_levels)

        # 3) the node itself
        doc = self._new_document(referral_id, payload, ancestors)
        await self._insert(doc, options)
        node = ReferralNode.from_document(doc)

        # 4) remaining levels; level 1 was written in step 1
        targets = [
            (level, ancestor_id, self._collection.push_child(ancestor_id, level, entry, options))
            for level, ancestor_id in ancestor_levels(ancestors, self.max_levels)
            if level > 1
        ]
        _, outcomes, errors = await self._dispatch(targets)
        outcomes.insert(0, FanoutOutcome(ancestor_id=parent_id, level=1, status="applied"))

        logger.info(
            "referral_created",
            referral_id=referral_id,
            parent_id=parent_id,
            levels=len(outcomes),
        )
        self._report("create", referral_id, BatchResult(primary=node, fanout=outcomes), errors)
        return node

    async def update_referral_payload(
        self,
        referral_id: str,
        payload: str,
        options: Optional[WriteOptions] = None,
    ) -> BatchResult:
        """
        set the payload on the node and on every ancestor's copy of it.

        ancestors whose copy is missing are reported as "skipped".
        """
        ancestors = await self._load_ancestors(referral_id, options)

        targets = [
            (
                level,
                ancestor_id,
                self._collection.set_child_payload(ancestor_id, level, referral_id, payload, options),
            )
            for level, ancestor_id in ancestor_levels(ancestors, self.max_levels)
        ]
        primary, outcomes, errors = await self._dispatch(
            targets, primary=self._collection.set_payload(referral_id, payload, options)
        )
        return self._finish("update_payload", referral_id, primary, outcomes, errors)

    async def remove_referral(
        self,
        referral_id: str,
        options: Optional[WriteOptions] = None,
    ) -> BatchResult:
        """
        delete the node and pull its copy out of every ancestor.

        only the node's own element is removed from each ancestor's level,
        siblings stay. descendants of the node are left as they are.
        """
        ancestors = await self._load_ancestors(referral_id, options)

        targets = [
            (level, ancestor_id, self._collection.pull_child(ancestor_id, level, referral_id, options))
            for level, ancestor_id in ancestor_levels(ancestors, self.max_levels)
        ]
        primary, outcomes, errors = await self._dispatch(
            targets, primary=self._collection.delete(referral_id, options)
        )
        return self._finish("remove", referral_id, primary, outcomes, errors)

    async def get_referral(
        self,
        referral_id: str,
        options: Optional[ReadOptions] = None,
    ) -> Optional[ReferralNode]:
        options = options or ReadOptions()
        doc = await self._collection.find(referral_id, fields=options.fields, options=options)
        if doc is None:
            return None
        return ReferralNode.from_document(doc)

    async def get_network(
        self,
        referral_id: str,
        options: Optional[ReadOptions] = None,
    ) -> Optional[List[List[Descendant]]]:
        """descendants per level, [level1, level2, ...], straight from the node's copies."""
        doc = await self._collection.find(referral_id, fields=("children",), options=options)
        if doc is None:
            return None
        node = ReferralNode.from_document(doc)
        return [node.descendants(level) for level in range(1, self.max_levels + 1)]

    async def _load_ancestors(self, referral_id: str, options: Optional[WriteOptions]):
        doc = await self._collection.find(
            referral_id, fields=("ancestors",), options=_read_options(options)
        )
        if doc is None:
            logger.info("referral_missing", referral_id=referral_id)
            raise ReferralNotFound(referral_id)
        return doc.get("ancestors") or []

    async def _dispatch(
        self,
        targets: List[FanoutTarget],
        primary: Optional[Awaitable[Any]] = None,
    ):
        """
        run the optional owning write and every fan-out write concurrently.

        returns (primary_result, outcomes, errors). exceptions are collected
        per target instead of aborting the batch on the first one.
        """
        awaitables = [pending for _, _, pending in targets]
        if primary is not None:
            awaitables.insert(0, primary)

        results = list(await asyncio.gather(*awaitables, return_exceptions=True))
        for res in results:
            if isinstance(res, BaseException) and not isinstance(res, Exception):
                raise res

        primary_result = results.pop(0) if primary is not None else None

        outcomes: List[FanoutOutcome] = []
        errors: List[BaseException] = []
        for (level, ancestor_id, _), res in zip(targets, results):
            if isinstance(res, Exception):
                errors.append(res)
                outcomes.append(
                    FanoutOutcome(ancestor_id=ancestor_id, level=level, status="failed", error=repr(res))
                )
            else:
                # falsy result: ancestor or its copy was not there to touch
                status = "applied" if res else "skipped"
                outcomes.append(FanoutOutcome(ancestor_id=ancestor_id, level=level, status=status))

        return primary_result, outcomes, errors

    def _finish(self, operation, referral_id, primary, outcomes, errors) -> BatchResult:
        primary_error = primary if isinstance(primary, Exception) else None
        node = ReferralNode.from_document(primary) if isinstance(primary, dict) else None
        result = BatchResult(primary=node, fanout=outcomes)

        if primary_error is None and node is None:
            logger.info("referral_vanished", operation=operation, referral_id=referral_id)

        if primary_error is not None:
            errors = [primary_error] + errors
        self._report(operation, referral_id, result, errors, primary_error)
        return result

    def _report(self, operation, referral_id, result, errors, primary_error=None) -> None:
        skipped = [o for o in result.fanout if o.status == "skipped"]
        if skipped:
            logger.info(
                "referral_fanout_skipped",
                operation=operation,
                referral_id=referral_id,
                targets=[(o.ancestor_id, o.level) for o in skipped],
            )

        if errors:
            logger.warning(
                "referral_fanout_failed",
                operation=operation,
                referral_id=referral_id,
                failed=[(o.ancestor_id, o.level) for o in result.failed],
                primary_failed=primary_error is not None,
            )
            raise PartialFanoutFailure(operation, referral_id, result, errors, primary_error)
