"""
Lifecycle Errors
Typed failures raised by the pricing, lifecycle and association services.

All of these except StorageError are deterministic and detected before any
write happens; callers get them back unchanged and must not retry them blindly.
"""

from typing import Iterable, Optional


class LifecycleError(Exception):
    """Base class for every failure the core reports to its callers"""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(LifecycleError):
    """Malformed input: negative quantity, missing cancel reason, immutable field edit..."""


class StaleTotals(ValidationError):
    """Stored quote totals no longer match what the line items produce"""

    def __init__(self, quote_number: Optional[str], field: str, stored, computed):
        super().__init__(
            f"Quote {quote_number or '(new)'} has stale totals: "
            f"stored {field}={stored}, computed {field}={computed}"
        )
        self.field = field
        self.stored = stored
        self.computed = computed


class InvalidTransition(LifecycleError):
    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        detail = f"Cannot change status from '{from_status}' to '{to_status}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.from_status = from_status
        self.to_status = to_status


class MissingAssociation(LifecycleError):
    """A quote can only become 'converted' through the association manager"""


class IncompleteEvidence(LifecycleError):
    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Cannot complete work order, missing evidence: {', '.join(self.missing)}")


class NotEditable(LifecycleError):
    def __init__(self, entity: str, status: str):
        super().__init__(f"{entity} in status '{status}' cannot be edited")
        self.status = status


class AlreadyAssociated(LifecycleError):
    """Either side of a quote/work order pair already points at a different counterpart"""


class StaleAssociation(LifecycleError):
    """The caller's view of the quote/work order pair no longer matches storage"""


class StorageError(LifecycleError):
    """The storage collaborator could not confirm the write; nothing was applied"""


class AuditWriteError(StorageError):
    """The change log append failed, so the whole operation was rolled back"""
