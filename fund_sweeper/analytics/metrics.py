from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.models import SweepStatus


@dataclass
class Summary:
    total: int
    confirmed: int
    failed: int
    submitted: int
    swept: dict[str, Decimal] = field(default_factory=dict)  # confirmed amount per asset (SOL or mint)


def get_summary(ledger: TransactionLedger) -> Summary:
    entries = ledger.list_all()
    swept: dict[str, Decimal] = {}
    for e in entries:
        if e.status is not SweepStatus.CONFIRMED:
            continue
        key = e.token_mint or "SOL"
        swept[key] = swept.get(key, Decimal(0)) + e.amount
    return Summary(
        total=len(entries),
        confirmed=sum(1 for e in entries if e.status is SweepStatus.CONFIRMED),
        failed=sum(1 for e in entries if e.status is SweepStatus.FAILED),
        submitted=sum(1 for e in entries if e.status is SweepStatus.SUBMITTED),
        swept=swept,
    )
