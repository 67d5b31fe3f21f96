from __future__ import annotations

from decimal import Decimal

from fund_sweeper.analytics.metrics import get_summary
from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.models import AssetKind, SweepAttempt, SweepStatus, to_ui_amount


def _attempt(status=SweepStatus.CONFIRMED, amount="1", mint=None, sig="s"):
    return SweepAttempt(
        source="src",
        destination="dst",
        asset_kind=AssetKind.TOKEN if mint else AssetKind.NATIVE,
        amount=Decimal(amount),
        raw_amount=1,
        status=status,
        network="devnet",
        signature=sig,
        token_mint=mint,
    )


def test_entries_keep_append_order():
    ledger = TransactionLedger()
    for i in range(5):
        ledger.append(_attempt(sig=f"s{i}"))
    assert [e.signature for e in ledger.list_all()] == [f"s{i}" for i in range(5)]
    assert len(ledger) == 5


def test_earlier_snapshot_is_prefix_of_later_one():
    ledger = TransactionLedger()
    ledger.append(_attempt(sig="a"))
    before = ledger.list_all()
    ledger.append(_attempt(sig="b"))
    after = ledger.list_all()

    assert before == after[: len(before)]
    assert len(before) == 1  # the copy did not grow


def test_listener_receives_full_snapshot():
    ledger = TransactionLedger()
    seen = []
    ledger.add_listener(seen.append)

    ledger.append(_attempt(sig="a"))
    ledger.append(_attempt(sig="b"))

    assert [[e.signature for e in snap] for snap in seen] == [["a"], ["a", "b"]]


def test_failing_listener_does_not_break_append():
    ledger = TransactionLedger()
    seen = []

    def broken(_):
        raise RuntimeError("listener down")

    ledger.add_listener(broken)
    ledger.add_listener(seen.append)
    ledger.append(_attempt())

    assert len(ledger) == 1
    assert len(seen) == 1


def test_removed_listener_is_not_called():
    ledger = TransactionLedger()
    seen = []
    ledger.add_listener(seen.append)
    ledger.remove_listener(seen.append)
    ledger.remove_listener(seen.append)  # no-op when absent
    ledger.append(_attempt())
    assert seen == []


def test_to_ui_amount():
    assert to_ui_amount(995_000, 9) == Decimal("0.000995")
    assert to_ui_amount(50, 0) == Decimal(50)
    assert to_ui_amount(1_500_000, 6) == Decimal("1.5")


def test_summary_counts_statuses_and_sums_confirmed_per_asset():
    ledger = TransactionLedger()
    ledger.append(_attempt(amount="0.5"))
    ledger.append(_attempt(amount="0.25"))
    ledger.append(_attempt(status=SweepStatus.FAILED, amount="9"))
    ledger.append(_attempt(status=SweepStatus.SUBMITTED, amount="3"))
    ledger.append(_attempt(amount="50", mint="MintA"))

    summary = get_summary(ledger)

    assert summary.total == 5
    assert summary.confirmed == 3
    assert summary.failed == 1
    assert summary.submitted == 1
    assert summary.swept == {"SOL": Decimal("0.75"), "MintA": Decimal("50")}


def test_summary_of_empty_ledger():
    summary = get_summary(TransactionLedger())
    assert summary.total == 0
    assert summary.swept == {}
