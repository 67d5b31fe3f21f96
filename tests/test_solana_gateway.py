from __future__ import annotations

import asyncio
import base64
import itertools
import json
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.responses import parse_websocket_message
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from fund_sweeper.chains.gateway import BalanceChange
from fund_sweeper.chains.solana import SolanaGateway
from fund_sweeper.chains.spl import TOKEN_PROGRAM_ID, associated_token_address, decode_mint_decimals, decode_token_amount
from fund_sweeper.config import AppSettings
from fund_sweeper.errors import InvalidAddressError, SubmissionError

SIG = str(Signature.default())


def _status(level=None, err=None, confirmations=0):
    return SimpleNamespace(err=err, confirmation_status=level, slot=42, confirmations=confirmations)


class FakeClient:
    def __init__(self, statuses=None, send_error=None, account=None):
        self.statuses = list(statuses or [])
        self.send_error = send_error
        self.account = account
        self.sent: list[bytes] = []
        self.status_calls = 0
        self.closed = False

    async def get_latest_blockhash(self):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    async def send_raw_transaction(self, raw, opts=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return SimpleNamespace(value=Signature.default())

    async def get_signature_statuses(self, sigs, search_transaction_history=False):
        self.status_calls += 1
        status = self.statuses.pop(0) if self.statuses else None
        return SimpleNamespace(value=[status])

    async def get_account_info(self, pubkey):
        return SimpleNamespace(value=self.account)

    async def close(self):
        self.closed = True


def _gateway(client):
    return SolanaGateway(network="devnet", rpc_url="http://rpc", ws_url="ws://rpc", client=client, poll_interval=0)


def test_decode_token_amount():
    data = bytes(64) + (123_456).to_bytes(8, "little") + bytes(93)
    assert decode_token_amount(data) == 123_456
    assert decode_token_amount(b"\x00" * 10) == 0


def test_decode_mint_decimals():
    data = bytearray(82)
    data[44] = 6
    assert decode_mint_decimals(bytes(data)) == 6
    with pytest.raises(ValueError):
        decode_mint_decimals(b"\x00" * 10)


def test_associated_token_address_is_deterministic_per_owner_and_mint():
    owner, mint = Keypair().pubkey(), Keypair().pubkey()
    ata = associated_token_address(owner, mint)
    assert ata == associated_token_address(owner, mint)
    assert ata != associated_token_address(Keypair().pubkey(), mint)
    assert not ata.is_on_curve()


@pytest.mark.asyncio
async def test_create_uses_configured_endpoints():
    gw = SolanaGateway.create(AppSettings(poll_interval_sec=0.25), "localnet")
    assert gw.rpc_url == "http://127.0.0.1:8899"
    assert gw.ws_url == "ws://127.0.0.1:8900"
    assert gw.poll_interval == 0.25
    await gw.close()


@pytest.mark.asyncio
async def test_poll_waits_for_requested_commitment():
    client = FakeClient(
        statuses=[None, _status(TransactionConfirmationStatus.Processed), _status(TransactionConfirmationStatus.Confirmed)]
    )
    result = await _gateway(client).poll_confirmation(SIG, "confirmed", timeout=1.0)
    assert result.ok
    assert result.slot == 42
    assert client.status_calls == 3


@pytest.mark.asyncio
async def test_poll_finalized_ignores_confirmed():
    client = FakeClient(
        statuses=[_status(TransactionConfirmationStatus.Confirmed), _status(TransactionConfirmationStatus.Finalized)]
    )
    result = await _gateway(client).poll_confirmation(SIG, "finalized", timeout=1.0)
    assert result.ok
    assert client.status_calls == 2


@pytest.mark.asyncio
async def test_poll_reports_on_chain_error():
    client = FakeClient(statuses=[_status(TransactionConfirmationStatus.Processed, err="InstructionError")])
    result = await _gateway(client).poll_confirmation(SIG, "confirmed", timeout=1.0)
    assert not result.ok
    assert result.err == "InstructionError"


@pytest.mark.asyncio
async def test_poll_times_out_when_never_seen():
    client = FakeClient()
    with pytest.raises(asyncio.TimeoutError):
        await _gateway(client).poll_confirmation(SIG, "confirmed", timeout=0.05)


@pytest.mark.asyncio
async def test_submit_signs_with_source_and_returns_signature():
    client = FakeClient()
    signer = Keypair()
    ix = transfer(TransferParams(from_pubkey=signer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=10))

    signature = await _gateway(client).submit_transaction([ix], signer)

    assert signature == SIG
    tx = Transaction.from_bytes(client.sent[0])
    assert tx.message.account_keys[0] == signer.pubkey()
    tx.verify()


@pytest.mark.asyncio
async def test_submit_failure_is_wrapped():
    client = FakeClient(send_error=RuntimeError("Blockhash not found"))
    signer = Keypair()
    ix = transfer(TransferParams(from_pubkey=signer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=10))
    with pytest.raises(SubmissionError, match="Blockhash not found"):
        await _gateway(client).submit_transaction([ix], signer)


@pytest.mark.asyncio
async def test_token_decimals():
    data = bytearray(82)
    data[44] = 9
    gw = _gateway(FakeClient(account=SimpleNamespace(data=bytes(data))))
    assert await gw.token_decimals(Keypair().pubkey()) == 9


@pytest.mark.asyncio
async def test_token_decimals_missing_mint():
    gw = _gateway(FakeClient(account=None))
    with pytest.raises(InvalidAddressError):
        await gw.token_decimals(Pubkey.default())


@pytest.mark.asyncio
async def test_close_closes_client():
    client = FakeClient()
    await _gateway(client).close()
    assert client.closed


class FakePubsub:
    """Scripted account-subscription server standing in for solana-py's websocket."""

    def __init__(self, failed_connects: int = 0):
        self.failed_connects = failed_connects
        self.connections: list[FakeWebsocket] = []
        self.subscribed: list[str] = []
        self.unsubscribed: list[int] = []
        self.remotes: dict[str, int] = {}
        self._ids = itertools.count(100)

    @asynccontextmanager
    async def connect(self, url):
        if self.failed_connects:
            self.failed_connects -= 1
            raise ConnectionError("connection refused")
        ws = FakeWebsocket(self)
        self.connections.append(ws)
        yield ws

    def notify(self, remote: int, lamports: int = 0, data: bytes = b"", slot: int = 7):
        self.connections[-1].push(
            {
                "jsonrpc": "2.0",
                "method": "accountNotification",
                "params": {
                    "result": {
                        "context": {"slot": slot},
                        "value": {
                            "data": [base64.b64encode(data).decode(), "base64"],
                            "executable": False,
                            "lamports": lamports,
                            "owner": str(TOKEN_PROGRAM_ID),
                            "rentEpoch": 0,
                            "space": len(data),
                        },
                    },
                    "subscription": remote,
                },
            }
        )

    def drop(self):
        self.connections[-1].queue.put_nowait(ConnectionError("connection reset"))


class FakeWebsocket:
    def __init__(self, server: FakePubsub):
        self.server = server
        self.queue: asyncio.Queue = asyncio.Queue()
        self._request_ids = itertools.count(1)

    def push(self, message: dict):
        self.queue.put_nowait(json.dumps(message))

    async def account_subscribe(self, pubkey, commitment=None, encoding=None):
        remote = next(self.server._ids)
        self.server.subscribed.append(str(pubkey))
        self.server.remotes[str(pubkey)] = remote
        self.push({"jsonrpc": "2.0", "result": remote, "id": next(self._request_ids)})

    async def account_unsubscribe(self, remote):
        self.server.unsubscribed.append(remote)

    async def recv(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return parse_websocket_message(item)


async def _until(condition, timeout: float = 2.0):
    async def wait():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait(), timeout=timeout)


@pytest.fixture
def pubsub(monkeypatch):
    server = FakePubsub()
    monkeypatch.setattr("fund_sweeper.chains.solana.ws_connect", server.connect)
    return server


def _ws_gateway():
    return SolanaGateway(
        network="devnet",
        rpc_url="http://rpc",
        ws_url="ws://rpc",
        client=FakeClient(),
        poll_interval=0,
        subscribe_timeout=2.0,
        reconnect_delay=0,
    )


@pytest.mark.asyncio
async def test_lamport_notifications_reach_the_callback(pubsub):
    gw = _ws_gateway()
    address = str(Keypair().pubkey())
    changes = []

    handle = await gw.subscribe_balance(address, changes.append)
    assert handle.kind == "balance"
    assert pubsub.subscribed == [address]

    pubsub.notify(pubsub.remotes[address], lamports=1_000_000, slot=9)
    await _until(lambda: changes)

    assert changes == [BalanceChange(address=address, amount=1_000_000, decimals=9, slot=9)]
    await gw.close()


@pytest.mark.asyncio
async def test_token_notifications_decode_the_account_amount(pubsub):
    gw = _ws_gateway()
    token_account = str(Keypair().pubkey())
    changes = []

    await gw.subscribe_token_balance(token_account, changes.append, decimals=6)
    data = bytes(64) + (50_000_000).to_bytes(8, "little") + bytes(93)
    pubsub.notify(pubsub.remotes[token_account], lamports=2_039_280, data=data)
    await _until(lambda: changes)

    assert changes[0].address == token_account
    assert changes[0].amount == 50_000_000
    assert changes[0].decimals == 6
    await gw.close()


@pytest.mark.asyncio
async def test_each_subscription_is_routed_separately(pubsub):
    gw = _ws_gateway()
    a, b = str(Keypair().pubkey()), str(Keypair().pubkey())
    seen_a, seen_b = [], []

    await gw.subscribe_balance(a, seen_a.append)
    await gw.subscribe_balance(b, seen_b.append)
    assert len(pubsub.connections) == 1  # one shared connection

    pubsub.notify(pubsub.remotes[b], lamports=5)
    await _until(lambda: seen_b)
    assert seen_a == []
    assert seen_b[0].amount == 5
    await gw.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(pubsub):
    gw = _ws_gateway()
    address = str(Keypair().pubkey())
    changes = []
    handle = await gw.subscribe_balance(address, changes.append)
    remote = pubsub.remotes[address]

    await gw.unsubscribe_balance(handle)
    assert pubsub.unsubscribed == [remote]

    pubsub.notify(remote, lamports=1_000_000)
    marker = str(Keypair().pubkey())
    seen = []
    await gw.subscribe_balance(marker, seen.append)
    pubsub.notify(pubsub.remotes[marker], lamports=1)
    await _until(lambda: seen)  # later message processed, earlier one ignored
    assert changes == []
    await gw.close()


@pytest.mark.asyncio
async def test_reconnect_resubscribes_live_handles(pubsub):
    gw = _ws_gateway()
    kept, dropped = str(Keypair().pubkey()), str(Keypair().pubkey())
    changes = []
    await gw.subscribe_balance(kept, changes.append)
    handle = await gw.subscribe_balance(dropped, changes.append)
    await gw.unsubscribe_balance(handle)

    pubsub.drop()
    await _until(lambda: len(pubsub.connections) == 2 and pubsub.subscribed.count(kept) == 2)
    await _until(lambda: gw._remote)

    assert pubsub.subscribed.count(dropped) == 1
    pubsub.notify(pubsub.remotes[kept], lamports=42)
    await _until(lambda: changes)
    assert changes[0].address == kept
    assert changes[0].amount == 42
    await gw.close()


@pytest.mark.asyncio
async def test_first_subscribe_after_failed_connect_is_sent_once(monkeypatch):
    pubsub = FakePubsub(failed_connects=1)
    monkeypatch.setattr("fund_sweeper.chains.solana.ws_connect", pubsub.connect)
    gw = _ws_gateway()
    address = str(Keypair().pubkey())
    changes = []

    await gw.subscribe_balance(address, changes.append)
    for _ in range(10):
        await asyncio.sleep(0)

    assert pubsub.subscribed == [address]
    pubsub.notify(pubsub.remotes[address], lamports=3)
    await _until(lambda: changes)
    await asyncio.sleep(0.05)
    assert len(changes) == 1
    await gw.close()
