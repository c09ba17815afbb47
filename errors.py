from typing import List, Optional

from models import BatchResult


class ReferralError(Exception):
    """base class for every error the referral tree raises on purpose."""


class ReferralConflict(ReferralError, ValueError):
    def __init__(self, referral_id: str):
        super().__init__(f"Referral {referral_id} already exists.")
        self.referral_id = referral_id


class ParentNotFound(ReferralError, LookupError):
    def __init__(self, parent_id: str):
        super().__init__(f"Parent referral {parent_id} not found.")
        self.parent_id = parent_id


class ReferralNotFound(ReferralError, LookupError):
    def __init__(self, referral_id: str):
        super().__init__(f"Referral {referral_id} not found.")
        self.referral_id = referral_id


class StoreUnavailable(ReferralError):
    """transport or timeout failure talking to the document store."""


class PartialFanoutFailure(ReferralError):
    """
    some writes of a batch failed while others went through.
    nothing is rolled back: `result` says exactly which targets were applied,
    skipped or failed, and `errors` holds every exception raised in the batch.
    """

    def __init__(
        self,
        operation: str,
        referral_id: str,
        result: BatchResult,
        errors: List[BaseException],
        primary_error: Optional[BaseException] = None,
    ):
        failed = ", ".join(f"{o.ancestor_id}@L{o.level}" for o in result.failed)
        parts = []
        if primary_error is not None:
            parts.append(f"owning write failed ({primary_error!r})")
        if failed:
            parts.append(f"fan-out failed for {failed}")
        super().__init__(f"{operation} {referral_id}: " + "; ".join(parts))
        self.operation = operation
        self.referral_id = referral_id
        self.result = result
        self.errors = errors
        self.primary_error = primary_error
