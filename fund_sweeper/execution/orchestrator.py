from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from loguru import logger
from solders.pubkey import Pubkey

from fund_sweeper.chains.gateway import BalanceChange, GatewayPool, LedgerGateway
from fund_sweeper.config import AppSettings
from fund_sweeper.errors import ConfirmationTimeoutError, InsufficientFundsError, SubmissionError
from fund_sweeper.execution.confirmation import confirm_with_retries
from fund_sweeper.execution.transfers import TransferPlan, build_native_transfer, build_token_transfer
from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.models import AssetKind, SweepAttempt, SweepStatus, WatchedAccount


@dataclass
class SweepPolicy:
    fee_reserve: int = 5000  # lamports left behind for the network fee
    max_attempts: int = 3
    timeout: float = 60.0
    commitment: str = "confirmed"
    backoff: float = 0.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, settings: AppSettings) -> SweepPolicy:
        return cls(
            fee_reserve=settings.fee_reserve_lamports,
            max_attempts=settings.confirm_max_attempts,
            timeout=settings.confirm_timeout_sec,
            commitment=settings.commitment,
            backoff=settings.confirm_backoff_sec,
            jitter=settings.confirm_jitter_sec,
        )


class SweepOrchestrator:
    """Turns balance notifications into sweeps.

    Each notification runs build -> submit -> confirm -> record as a
    background task. Pipelines for the same address are serialized, and a
    notification that was overtaken by a newer one while it waited is dropped,
    so only the freshest balance gets spent. Every submitted sweep lands in
    the ledger: confirmed, failed (with the reason) or submitted when the
    confirmation outcome stayed unknown.
    """

    def __init__(self, ledger: TransactionLedger, gateways: GatewayPool, policy: SweepPolicy | None = None):
        self.ledger = ledger
        self.gateways = gateways
        self.policy = policy or SweepPolicy()
        self._locks: dict[str, asyncio.Lock] = {}
        self._latest: dict[str, int] = {}
        self._seq = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, account: WatchedAccount, change: BalanceChange) -> asyncio.Task | None:
        if change.amount <= 0:
            logger.debug("Ignoring zero balance notification for {}", account.address)
            return None
        seq = next(self._seq)
        self._latest[account.address] = seq
        task = asyncio.get_running_loop().create_task(self._run_serialized(account, change, seq))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _run_serialized(self, account: WatchedAccount, change: BalanceChange, seq: int) -> SweepAttempt | None:
        lock = self._locks.setdefault(account.address, asyncio.Lock())
        try:
            async with lock:
                if self._latest.get(account.address, seq) > seq:
                    logger.info("Skipping superseded notification for {} (balance {})", account.address, change.amount)
                    return None
                try:
                    return await self.handle_change(account, change)
                except Exception as e:
                    # Never let a sweep failure reach the subscription
                    logger.exception("Sweep pipeline for {} failed: {}", account.address, e)
                    return None
        finally:
            self._release(account.address, seq, lock)

    def _release(self, address: str, seq: int, lock: asyncio.Lock) -> None:
        # The newest notification for an address runs last; once it is done
        # nothing else waits on the lock
        if self._latest.get(address) == seq and not lock.locked():
            del self._latest[address]
            self._locks.pop(address, None)

    @property
    def tracked_accounts(self) -> int:
        return len(self._locks)

    async def handle_change(self, account: WatchedAccount, change: BalanceChange) -> SweepAttempt | None:
        if change.amount <= 0:
            return None
        gateway = self.gateways.get(account.network)
        try:
            plan = await self.build_plan(gateway, account, change)
        except InsufficientFundsError as e:
            logger.warning("Not enough balance to sweep {}: {}", account.address, e)
            return None

        unit = "SOL" if plan.asset_kind is AssetKind.NATIVE else f"tokens ({plan.token_mint})"
        logger.info("Received funds on {}, transferring {} {} to {}", account.address, plan.ui_amount, unit, plan.destination)

        try:
            signature = await gateway.submit_transaction(plan.instructions, account.signer)
        except SubmissionError as e:
            logger.error("Error transferring funds from {}: {}", account.address, e)
            return self._record(account, plan, SweepStatus.FAILED, error=str(e))
        logger.info("Transfer transaction sent with signature: {}", signature)

        try:
            result = await confirm_with_retries(
                gateway,
                signature,
                max_attempts=self.policy.max_attempts,
                timeout=self.policy.timeout,
                commitment=self.policy.commitment,
                backoff=self.policy.backoff,
                jitter=self.policy.jitter,
            )
        except ConfirmationTimeoutError as e:
            logger.error("Could not confirm {}: {} (last error: {})", signature, e, e.__cause__)
            return self._record(account, plan, SweepStatus.SUBMITTED, signature=signature, error=str(e))

        if not result.ok:
            logger.error("Transfer transaction {} failed on chain: {}", signature, result.err)
            return self._record(
                account, plan, SweepStatus.FAILED, signature=signature, error=f"Transaction failed: {result.err}"
            )
        logger.info("Transfer transaction confirmed: {} (slot {})", signature, result.slot)
        return self._record(account, plan, SweepStatus.CONFIRMED, signature=signature)

    async def build_plan(self, gateway: LedgerGateway, account: WatchedAccount, change: BalanceChange) -> TransferPlan:
        destination = Pubkey.from_string(account.destination)
        if account.asset_kind is AssetKind.TOKEN:
            return await build_token_transfer(
                gateway,
                account.signer,
                destination,
                mint=Pubkey.from_string(account.token_mint),
                source_token_account=Pubkey.from_string(change.address),
                observed_token_amount=change.amount,
                decimals=change.decimals or account.decimals,
            )
        return build_native_transfer(account.signer, destination, change.amount, self.policy.fee_reserve)

    def _record(
        self,
        account: WatchedAccount,
        plan: TransferPlan,
        status: SweepStatus,
        signature: str | None = None,
        error: str | None = None,
    ) -> SweepAttempt:
        attempt = SweepAttempt(
            source=plan.source,
            destination=plan.destination,
            asset_kind=plan.asset_kind,
            amount=plan.ui_amount,
            raw_amount=plan.amount,
            status=status,
            network=account.network,
            signature=signature,
            token_mint=plan.token_mint,
            error=error,
        )
        self.ledger.append(attempt)
        return attempt
