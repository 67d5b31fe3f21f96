from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000


class AssetKind(str, Enum):
    NATIVE = "native"
    TOKEN = "token"


class SweepStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ui_amount(raw_amount: int, decimals: int) -> Decimal:
    """Convert a smallest-unit amount into the asset's natural unit."""
    return Decimal(int(raw_amount)).scaleb(-int(decimals))


@dataclass
class WatchedAccount:
    address: str
    destination: str
    asset_kind: AssetKind
    network: str
    subscription_handle: Any
    signer: Any = field(repr=False)
    token_mint: str | None = None
    token_account: str | None = None  # source associated token account (token watches)
    decimals: int = 0
    started_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SweepAttempt:
    source: str
    destination: str
    asset_kind: AssetKind
    amount: Decimal
    raw_amount: int
    status: SweepStatus
    network: str
    signature: str | None = None
    token_mint: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
