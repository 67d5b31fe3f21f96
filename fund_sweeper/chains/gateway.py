from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from loguru import logger
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey


@dataclass(frozen=True)
class BalanceChange:
    address: str  # account whose data changed (wallet or token account)
    amount: int  # observed balance in the smallest unit
    decimals: int = 0
    slot: int = 0


@dataclass(frozen=True)
class SubscriptionHandle:
    subscription_id: int
    account: str
    kind: str  # "balance" | "token_balance"


@dataclass(frozen=True)
class ConfirmationResult:
    signature: str
    err: Any = None
    slot: int | None = None

    @property
    def ok(self) -> bool:
        return self.err is None


BalanceCallback = Callable[[BalanceChange], None]


class LedgerGateway(Protocol):
    async def subscribe_balance(self, address: str, callback: BalanceCallback) -> SubscriptionHandle: ...

    async def subscribe_token_balance(
        self, token_account: str, callback: BalanceCallback, decimals: int = 0
    ) -> SubscriptionHandle: ...

    async def unsubscribe_balance(self, handle: SubscriptionHandle) -> None: ...

    async def unsubscribe_token_balance(self, handle: SubscriptionHandle) -> None: ...

    async def submit_transaction(self, instructions: Sequence[Instruction], signer: Keypair) -> str: ...

    async def poll_confirmation(self, signature: str, commitment: str, timeout: float) -> ConfirmationResult: ...

    async def resolve_associated_token_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey: ...

    async def token_decimals(self, mint: Pubkey) -> int: ...

    async def close(self) -> None: ...


GatewayFactory = Callable[[str], LedgerGateway]


class GatewayPool:
    """One gateway per network, created on first use."""

    def __init__(self, factory: GatewayFactory):
        self._factory = factory
        self._gateways: dict[str, LedgerGateway] = {}

    def get(self, network: str) -> LedgerGateway:
        gateway = self._gateways.get(network)
        if gateway is None:
            gateway = self._factory(network)
            self._gateways[network] = gateway
            logger.info("Opened ledger gateway for network {}", network)
        return gateway

    async def close(self) -> None:
        gateways = list(self._gateways.items())
        self._gateways.clear()
        for network, gateway in gateways:
            try:
                await gateway.close()
            except Exception as e:
                logger.warning("Closing gateway for {} failed: {}", network, e)
