from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Descendant(BaseModel):
    """denormalized copy of a descendant kept on one of its ancestors."""

    id: str
    payload: Optional[str] = None


class ReferralNode(BaseModel):
    """
    one referral document.

    ancestors: list of length max_levels + 1, index 0 unused.
      ancestors[k] is the ancestor k hops up, or None.
      a root has every slot None; ancestor_map() is {} for it.
      a read narrowed to other fields leaves ancestors empty.
    children: list of length max_levels + 1, index 0 unused.
      children[k] holds the descendants k hops down, in append order.
    """

    id: str
    payload: Optional[str] = None
    ancestors: List[Optional[str]] = Field(default_factory=list)
    children: List[List[Descendant]] = Field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ReferralNode":
        return cls.model_validate(doc)

    def ancestor_map(self) -> Dict[int, str]:
        """{level: ancestor_id} for the levels that are set (empty for a root)."""
        return {
            level: ancestor_id
            for level, ancestor_id in enumerate(self.ancestors)
            if level > 0 and ancestor_id is not None
        }

    def descendants(self, level: int) -> List[Descendant]:
        if 0 < level < len(self.children):
            return self.children[level]
        return []


class ReadOptions(BaseModel):
    """
    options for a single read.

    session: opaque handle forwarded to the store untouched
      (e.g. a caller-owned connection for transaction scoping).
    fields: narrow the projection to these top-level fields.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    session: Optional[Any] = None
    fields: Optional[Tuple[str, ...]] = None


class WriteOptions(BaseModel):
    """options for a write; session is forwarded to the store untouched."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    session: Optional[Any] = None


FanoutStatus = Literal["applied", "skipped", "failed"]


class FanoutOutcome(BaseModel):
    """result of one fan-out write against one ancestor document."""

    ancestor_id: str
    level: int
    status: FanoutStatus
    error: Optional[str] = None


class BatchResult(BaseModel):
    """
    primary: the owning document after the write
      (post-update node for payload updates, the removed node for deletes),
      or None if the owning write found nothing.
    fanout: one outcome per ancestor targeted.
    """

    primary: Optional[ReferralNode] = None
    fanout: List[FanoutOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> List[FanoutOutcome]:
        return [o for o in self.fanout if o.status == "failed"]
