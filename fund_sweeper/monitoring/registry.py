from __future__ import annotations

import asyncio

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fund_sweeper.chains.gateway import BalanceChange, GatewayPool
from fund_sweeper.errors import AlreadyMonitoringError, InvalidAddressError, NotFoundError
from fund_sweeper.execution.orchestrator import SweepOrchestrator
from fund_sweeper.models import AssetKind, WatchedAccount


def parse_pubkey(value: str, what: str) -> Pubkey:
    try:
        return Pubkey.from_string(str(value).strip())
    except Exception as e:
        raise InvalidAddressError(f"Invalid {what}: {value!r}") from e


class MonitoringRegistry:
    """Active watches keyed by source address.

    At most one subscription exists per address: starting a watch that is
    already active tears the old subscription down first (or is rejected when
    `reject_duplicates` is set). All mutations run under one lock.
    """

    def __init__(self, orchestrator: SweepOrchestrator, gateways: GatewayPool, reject_duplicates: bool = False):
        self.orchestrator = orchestrator
        self.gateways = gateways
        self.reject_duplicates = reject_duplicates
        self._entries: dict[str, WatchedAccount] = {}
        self._lock = asyncio.Lock()

    async def start(
        self, signer: Keypair, destination: str, network: str, token_mint: str | None = None
    ) -> str:
        address = str(signer.pubkey())
        dest = parse_pubkey(destination, "destination address")
        mint = parse_pubkey(token_mint, "token mint address") if token_mint else None

        async with self._lock:
            existing = self._entries.get(address)
            if existing is not None and self.reject_duplicates:
                raise AlreadyMonitoringError(address)

            # The new subscription goes live before the previous one is torn
            # down, so a failed restart leaves the existing watch in place
            gateway = self.gateways.get(network)
            account = WatchedAccount(
                address=address,
                destination=str(dest),
                asset_kind=AssetKind.TOKEN if mint else AssetKind.NATIVE,
                network=network,
                subscription_handle=None,
                signer=signer,
                token_mint=str(mint) if mint else None,
            )

            def on_change(change: BalanceChange) -> None:
                self.orchestrator.dispatch(account, change)

            if mint is not None:
                token_account = await gateway.resolve_associated_token_account(signer.pubkey(), mint)
                account.token_account = str(token_account)
                account.decimals = await gateway.token_decimals(mint)
                account.subscription_handle = await gateway.subscribe_token_balance(
                    str(token_account), on_change, decimals=account.decimals
                )
            else:
                account.decimals = 9
                account.subscription_handle = await gateway.subscribe_balance(address, on_change)

            if existing is not None:
                logger.warning("Replacing active watch for {}; tearing down previous subscription", address)
                try:
                    await self._unsubscribe(existing)
                except Exception as e:
                    logger.warning("Unsubscribe of previous watch for {} failed: {}", address, e)
            self._entries[address] = account

        logger.info(
            "Monitoring for incoming {} transactions on {} for address {}", account.asset_kind.value, network, address
        )
        return address

    async def stop(self, address: str) -> WatchedAccount:
        async with self._lock:
            account = self._entries.get(address)
            if account is None:
                raise NotFoundError(address)
            await self._unsubscribe(account)
            del self._entries[address]
        logger.info("Monitoring stopped for {}", address)
        return account

    async def shutdown(self) -> None:
        async with self._lock:
            accounts = list(self._entries.values())
            self._entries.clear()
            for account in accounts:
                try:
                    await self._unsubscribe(account)
                except Exception as e:
                    logger.warning("Unsubscribe failed for {} during shutdown: {}", account.address, e)
        if accounts:
            logger.info("Stopped {} watch(es) on shutdown", len(accounts))

    async def _unsubscribe(self, account: WatchedAccount) -> None:
        gateway = self.gateways.get(account.network)
        if account.asset_kind is AssetKind.TOKEN:
            await gateway.unsubscribe_token_balance(account.subscription_handle)
        else:
            await gateway.unsubscribe_balance(account.subscription_handle)

    def get(self, address: str) -> WatchedAccount | None:
        return self._entries.get(address)

    def list(self) -> list[WatchedAccount]:
        return list(self._entries.values())

    def __contains__(self, address: str) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)
