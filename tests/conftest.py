from __future__ import annotations

import itertools

import pytest
from solders.keypair import Keypair

from fund_sweeper.chains.gateway import ConfirmationResult, GatewayPool, SubscriptionHandle
from fund_sweeper.chains.spl import associated_token_address
from fund_sweeper.execution.orchestrator import SweepOrchestrator, SweepPolicy
from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.models import AssetKind, WatchedAccount
from fund_sweeper.monitoring.registry import MonitoringRegistry

# Standard BIP39 test vector
TEST_MNEMONIC = ["abandon"] * 11 + ["about"]


class FakeGateway:
    """In-memory ledger gateway with scripted confirmation outcomes."""

    def __init__(self, decimals: int = 0):
        self.decimals = decimals
        self.subscriptions: dict[int, tuple[SubscriptionHandle, object]] = {}
        self.unsubscribed: list[SubscriptionHandle] = []
        self.submitted: list[tuple[list, Keypair]] = []
        self.confirmations: list = []  # ConfirmationResult or exception per poll; empty -> success
        self.submit_error: Exception | None = None
        self.poll_calls = 0
        self.closed = False
        self._ids = itertools.count(1)
        self._sigs = itertools.count(1)

    async def subscribe_balance(self, address, callback):
        handle = SubscriptionHandle(subscription_id=next(self._ids), account=address, kind="balance")
        self.subscriptions[handle.subscription_id] = (handle, callback)
        return handle

    async def subscribe_token_balance(self, token_account, callback, decimals=0):
        handle = SubscriptionHandle(subscription_id=next(self._ids), account=token_account, kind="token_balance")
        self.subscriptions[handle.subscription_id] = (handle, callback)
        return handle

    async def unsubscribe_balance(self, handle):
        assert handle.kind == "balance"
        self.subscriptions.pop(handle.subscription_id, None)
        self.unsubscribed.append(handle)

    async def unsubscribe_token_balance(self, handle):
        assert handle.kind == "token_balance"
        self.subscriptions.pop(handle.subscription_id, None)
        self.unsubscribed.append(handle)

    async def submit_transaction(self, instructions, signer):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((list(instructions), signer))
        return f"sig{next(self._sigs)}"

    async def poll_confirmation(self, signature, commitment, timeout):
        self.poll_calls += 1
        if self.confirmations:
            outcome = self.confirmations.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return ConfirmationResult(signature=signature, err=None, slot=1)

    async def resolve_associated_token_account(self, owner, mint):
        return associated_token_address(owner, mint)

    async def token_decimals(self, mint):
        return self.decimals

    async def close(self):
        self.closed = True

    def active_accounts(self) -> list[str]:
        return [h.account for h, _ in self.subscriptions.values()]

    def notify(self, account: str, change) -> int:
        """Deliver a change to every live subscription on `account`."""
        delivered = 0
        for handle, callback in list(self.subscriptions.values()):
            if handle.account == account:
                callback(change)
                delivered += 1
        return delivered


def make_account(
    signer: Keypair,
    destination: str,
    asset_kind: AssetKind = AssetKind.NATIVE,
    token_mint: str | None = None,
    decimals: int = 9,
) -> WatchedAccount:
    return WatchedAccount(
        address=str(signer.pubkey()),
        destination=destination,
        asset_kind=asset_kind,
        network="devnet",
        subscription_handle=None,
        signer=signer,
        token_mint=token_mint,
        decimals=decimals,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pool(gateway):
    return GatewayPool(lambda network: gateway)


@pytest.fixture
def ledger():
    return TransactionLedger()


@pytest.fixture
def policy():
    return SweepPolicy(fee_reserve=5000, max_attempts=3, timeout=1.0)


@pytest.fixture
def orchestrator(ledger, pool, policy):
    return SweepOrchestrator(ledger, pool, policy)


@pytest.fixture
def registry(orchestrator, pool):
    return MonitoringRegistry(orchestrator, pool)


@pytest.fixture
def source():
    return Keypair()


@pytest.fixture
def destination():
    return str(Keypair().pubkey())


@pytest.fixture
def mint():
    return str(Keypair().pubkey())


@pytest.fixture
def account_factory():
    return make_account


@pytest.fixture
def mnemonic():
    return list(TEST_MNEMONIC)
