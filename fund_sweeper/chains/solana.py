from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect as ws_connect
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.rpc.responses import AccountNotification, SubscriptionError, SubscriptionResult
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from fund_sweeper.chains.gateway import (
    BalanceCallback,
    BalanceChange,
    ConfirmationResult,
    SubscriptionHandle,
)
from fund_sweeper.chains.spl import associated_token_address, decode_mint_decimals, decode_token_amount
from fund_sweeper.config import AppSettings
from fund_sweeper.errors import InvalidAddressError, SubmissionError

_CONFIRMATION_LEVELS = [
    TransactionConfirmationStatus.Processed,
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
]
_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass
class _Subscription:
    account: str
    kind: str
    callback: BalanceCallback
    decimals: int = 0


@dataclass
class SolanaGateway:
    """Ledger gateway over one Solana cluster.

    RPC calls go through solana-py's AsyncClient. Account subscriptions share a
    single websocket per gateway, opened on the first subscribe and re-opened
    (with every live subscription re-sent) when the connection drops.
    Handles carry a local id, so they stay valid across reconnects.
    """

    network: str
    rpc_url: str
    ws_url: str
    client: AsyncClient
    poll_interval: float = 0.5
    subscribe_timeout: float = 15.0
    reconnect_delay: float = 1.0

    _ids: Any = field(default_factory=lambda: itertools.count(1), init=False, repr=False)
    _subs: dict[int, _Subscription] = field(default_factory=dict, init=False, repr=False)
    _remote: dict[int, int] = field(default_factory=dict, init=False, repr=False)  # local -> remote id
    _routes: dict[int, int] = field(default_factory=dict, init=False, repr=False)  # remote -> local id
    _pending: tuple[int, asyncio.Future] | None = field(default=None, init=False, repr=False)
    _sub_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _connected: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _ws: Any = field(default=None, init=False, repr=False)
    _reader: asyncio.Task | None = field(default=None, init=False, repr=False)
    _background: set = field(default_factory=set, init=False, repr=False)
    _lost: set = field(default_factory=set, init=False, repr=False)  # local ids live before the last drop

    @classmethod
    def create(cls, settings: AppSettings, network: str) -> SolanaGateway:
        rpc_url = settings.rpc_url_for(network)
        client = AsyncClient(rpc_url, commitment=Commitment(settings.commitment))
        return cls(
            network=network,
            rpc_url=rpc_url,
            ws_url=settings.ws_url_for(network),
            client=client,
            poll_interval=settings.poll_interval_sec,
        )

    # --- subscriptions ---

    async def subscribe_balance(self, address: str, callback: BalanceCallback) -> SubscriptionHandle:
        return await self._subscribe(_Subscription(account=address, kind="balance", callback=callback))

    async def subscribe_token_balance(
        self, token_account: str, callback: BalanceCallback, decimals: int = 0
    ) -> SubscriptionHandle:
        return await self._subscribe(
            _Subscription(account=token_account, kind="token_balance", callback=callback, decimals=decimals)
        )

    async def unsubscribe_balance(self, handle: SubscriptionHandle) -> None:
        await self._unsubscribe(handle)

    async def unsubscribe_token_balance(self, handle: SubscriptionHandle) -> None:
        await self._unsubscribe(handle)

    async def _subscribe(self, sub: _Subscription) -> SubscriptionHandle:
        local_id = next(self._ids)
        self._subs[local_id] = sub
        try:
            await self._send_subscribe(local_id, sub)
        except Exception:
            self._subs.pop(local_id, None)
            raise
        logger.info("Subscribed to {} changes of {} on {}", sub.kind, sub.account, self.network)
        return SubscriptionHandle(subscription_id=local_id, account=sub.account, kind=sub.kind)

    async def _send_subscribe(self, local_id: int, sub: _Subscription) -> int:
        # Serialized so each SubscriptionResult maps to exactly one request
        async with self._sub_lock:
            ws = await self._ensure_ws()
            fut = asyncio.get_running_loop().create_future()
            self._pending = (local_id, fut)
            try:
                await ws.account_subscribe(
                    Pubkey.from_string(sub.account), commitment=Confirmed, encoding="base64"
                )
                return await asyncio.wait_for(fut, timeout=self.subscribe_timeout)
            finally:
                self._pending = None

    async def _unsubscribe(self, handle: SubscriptionHandle) -> None:
        sub = self._subs.pop(handle.subscription_id, None)
        self._lost.discard(handle.subscription_id)
        if sub is None:
            logger.debug("Unsubscribe for unknown handle {}", handle)
            return
        remote = self._remote.pop(handle.subscription_id, None)
        if remote is None:
            return
        self._routes.pop(remote, None)
        if self._ws is not None:
            await self._ws.account_unsubscribe(remote)
        logger.info("Unsubscribed from {} changes of {} on {}", sub.kind, sub.account, self.network)

    async def _ensure_ws(self):
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._run())
        await asyncio.wait_for(self._connected.wait(), timeout=self.subscribe_timeout)
        return self._ws

    async def _run(self):
        delay = self.reconnect_delay
        while True:
            try:
                async with ws_connect(self.ws_url) as websocket:
                    self._ws = websocket
                    self._connected.set()
                    delay = self.reconnect_delay
                    logger.info("Solana websocket connected: {}", self.ws_url)
                    if self._lost:
                        for stale in list(self._background):
                            stale.cancel()
                        task = asyncio.create_task(self._resubscribe_all())
                        self._background.add(task)
                        task.add_done_callback(self._background.discard)
                    while True:
                        msgs = await websocket.recv()
                        for msg in msgs:
                            self._handle_message(msg)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Solana websocket for {} dropped: {}; reconnecting in {}s", self.network, e, delay)
            finally:
                self._ws = None
                self._connected.clear()
                self._lost.update(self._remote)
                self._remote.clear()
                self._routes.clear()
                if self._pending and not self._pending[1].done():
                    self._pending[1].set_exception(ConnectionError("websocket closed"))
            await asyncio.sleep(delay)
            delay = min(delay * 2, 30.0)

    async def _resubscribe_all(self):
        # Only handles that were live before the drop; a first subscribe still
        # waiting for the connection sends its own request
        for local_id in sorted(self._lost):
            sub = self._subs.get(local_id)
            if sub is None or local_id in self._remote:
                self._lost.discard(local_id)
                continue
            try:
                await self._send_subscribe(local_id, sub)
                self._lost.discard(local_id)
                logger.info("Re-subscribed to {} changes of {}", sub.kind, sub.account)
            except Exception as e:
                logger.error("Re-subscribe failed for {}: {}", sub.account, e)

    def _handle_message(self, msg) -> None:
        if isinstance(msg, SubscriptionResult):
            if self._pending is None:
                return
            local_id, fut = self._pending
            if fut.done():
                return
            self._remote[local_id] = msg.result
            self._routes[msg.result] = local_id
            fut.set_result(msg.result)
        elif isinstance(msg, SubscriptionError):
            if self._pending and not self._pending[1].done():
                self._pending[1].set_exception(RuntimeError(f"Subscription rejected: {msg.error}"))
        elif isinstance(msg, AccountNotification):
            local_id = self._routes.get(msg.subscription)
            sub = self._subs.get(local_id) if local_id is not None else None
            if sub is None:
                return
            value = msg.result.value
            slot = msg.result.context.slot
            if sub.kind == "token_balance":
                change = BalanceChange(
                    address=sub.account, amount=decode_token_amount(value.data), decimals=sub.decimals, slot=slot
                )
            else:
                change = BalanceChange(address=sub.account, amount=int(value.lamports), decimals=9, slot=slot)
            try:
                sub.callback(change)
            except Exception as e:
                logger.exception("Balance callback for {} failed: {}", sub.account, e)

    # --- transactions ---

    async def submit_transaction(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        try:
            blockhash = (await self.client.get_latest_blockhash()).value.blockhash
            message = Message.new_with_blockhash(list(instructions), signer.pubkey(), blockhash)
            tx = Transaction([signer], message, blockhash)
            resp = await self.client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
            )
        except Exception as e:
            raise SubmissionError(str(e)) from e
        return str(resp.value)

    async def poll_confirmation(self, signature: str, commitment: str, timeout: float) -> ConfirmationResult:
        sig = Signature.from_string(signature)
        return await asyncio.wait_for(self._wait_for_status(sig, commitment), timeout=timeout)

    async def _wait_for_status(self, sig: Signature, commitment: str) -> ConfirmationResult:
        wanted = _COMMITMENT_RANK.get(commitment, 1)
        while True:
            resp = await self.client.get_signature_statuses([sig], search_transaction_history=True)
            status = resp.value[0]
            if status is not None:
                if status.err is not None:
                    return ConfirmationResult(signature=str(sig), err=str(status.err), slot=status.slot)
                if status.confirmation_status is None:
                    # Older nodes only report rooted transactions without a level
                    reached = 2 if status.confirmations is None else 0
                else:
                    reached = _CONFIRMATION_LEVELS.index(status.confirmation_status)
                if reached >= wanted:
                    return ConfirmationResult(signature=str(sig), err=None, slot=status.slot)
            await asyncio.sleep(self.poll_interval)

    # --- accounts ---

    async def resolve_associated_token_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        return associated_token_address(owner, mint)

    async def token_decimals(self, mint: Pubkey) -> int:
        resp = await self.client.get_account_info(mint)
        if resp.value is None:
            raise InvalidAddressError(f"Mint account not found: {mint}")
        return decode_mint_decimals(resp.value.data)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        for task in list(self._background):
            task.cancel()
        await self.client.close()
        logger.info("Closed Solana gateway for {}", self.network)
