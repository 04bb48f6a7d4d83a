"""
Error kinds and result types for case transitions.

Inside the engine every failure is raised as a :class:`TransitionError`
so the surrounding ``transaction.atomic()`` block rolls back.  At the
public boundary errors are turned into :class:`Rejected` values;
successful calls return :class:`Applied` or :class:`Deleted`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class TransitionError(Exception):
    kind = 'TransitionError'

    def __init__(self, message: str = '', **details: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: Dict[str, Any] = details


class NotFound(TransitionError):
    kind = 'NotFound'


class InvalidTransition(TransitionError):
    kind = 'InvalidTransition'


class PreconditionFailed(TransitionError):
    kind = 'PreconditionFailed'


class Unauthorized(TransitionError):
    kind = 'Unauthorized'


class LedgerInconsistent(TransitionError):
    kind = 'LedgerInconsistent'


class StorageConflict(TransitionError):
    kind = 'StorageConflict'


@dataclass
class Applied:
    case_id: int
    old_status: str
    new_status: str
    # "debit", "credit", "skipped" or None when no course was touched
    ledger: Optional[str] = None
    soap_reentry_required: bool = False

    ok = True


@dataclass
class Rejected:
    kind: str
    message: str = ''
    details: Dict[str, Any] = field(default_factory=dict)

    ok = False

    @classmethod
    def from_error(cls, exc: TransitionError) -> 'Rejected':
        return cls(kind=exc.kind, message=exc.message, details=dict(exc.details))


@dataclass
class Deleted:
    case_id: int
    pn_code: str
    removed: Dict[str, int] = field(default_factory=dict)

    ok = True
