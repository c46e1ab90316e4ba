"""
Points Ledger

This package provides:
- Append-only point records with a cached, reconcilable balance per user
- Earning rules with per-source idempotency (invites, uploads, downloads, check-ins)
- Spending with balance checks, linked side effects and refunds
- Points statistics and trend series
- Scoped SQL transactions with per-user row locks

The composed system lives in ledger.container and the HTTP adapter in
ledger.api.
"""

from .config import Settings, get_settings
from .errors import (
    LedgerServiceError,
    NotFoundError,
    UserNotFoundError,
    InsufficientBalanceError,
    AlreadyRewardedError,
    RuleDisabledError,
    ValidationError,
)
from .models import (
    RecordType,
    PointSource,
    UserStatus,
    PointRecordEntry,
    AppendResult,
    UserBalance,
)

__all__ = [
    "Settings",
    "get_settings",
    "LedgerServiceError",
    "NotFoundError",
    "UserNotFoundError",
    "InsufficientBalanceError",
    "AlreadyRewardedError",
    "RuleDisabledError",
    "ValidationError",
    "RecordType",
    "PointSource",
    "UserStatus",
    "PointRecordEntry",
    "AppendResult",
    "UserBalance",
]
