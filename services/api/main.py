from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from fund_sweeper.analytics.metrics import get_summary
from fund_sweeper.chains.gateway import GatewayFactory
from fund_sweeper.config import AppSettings
from fund_sweeper.errors import (
    AlreadyMonitoringError,
    InvalidAddressError,
    KeyDerivationError,
    NotFoundError,
)
from fund_sweeper.keys import derive_keypair
from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.models import SweepAttempt, WatchedAccount
from fund_sweeper.service import SweepService


class StartMonitoringIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    seed: list[str]
    secure_wallet: str = Field(alias="secureWalletPublicKey")
    network: str | None = None
    token_mint: str | None = Field(default=None, alias="tokenMintAddress")


class StopMonitoringIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_key: str = Field(alias="publicKey")


class TransactionOut(BaseModel):
    signature: str | None
    source: str = Field(serialization_alias="from")
    destination: str = Field(serialization_alias="to")
    amount: float
    status: str
    asset_kind: str = Field(serialization_alias="assetKind")
    token_mint: str | None = Field(serialization_alias="tokenMint")
    network: str
    timestamp: str
    error: str | None

    @classmethod
    def from_model(cls, m: SweepAttempt):
        return cls(
            signature=m.signature,
            source=m.source,
            destination=m.destination,
            amount=float(m.amount),
            status=m.status.value,
            asset_kind=m.asset_kind.value,
            token_mint=m.token_mint,
            network=m.network,
            timestamp=m.timestamp.isoformat(),
            error=m.error,
        )


class WatchOut(BaseModel):
    public_key: str = Field(serialization_alias="publicKey")
    destination: str
    network: str
    asset_kind: str = Field(serialization_alias="assetKind")
    token_mint: str | None = Field(serialization_alias="tokenMint")
    started_at: str = Field(serialization_alias="startedAt")

    @classmethod
    def from_model(cls, m: WatchedAccount):
        return cls(
            public_key=m.address,
            destination=m.destination,
            network=m.network,
            asset_kind=m.asset_kind.value,
            token_mint=m.token_mint,
            started_at=m.started_at.isoformat(),
        )


def transaction_log(entries: list[SweepAttempt]) -> list[dict]:
    return [TransactionOut.from_model(e).model_dump(by_alias=True) for e in entries]


class TransactionLogHub:
    """Pushes the full ledger to every connected websocket client."""

    def __init__(self, ledger: TransactionLedger):
        self.ledger = ledger
        self.clients: set[WebSocket] = set()
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def message(entries: list[SweepAttempt]) -> dict:
        return {"type": "transactionLog", "data": transaction_log(entries)}

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.clients.add(websocket)
        logger.info("WebSocket client connected ({} total)", len(self.clients))
        await websocket.send_json(self.message(self.ledger.list_all()))

    def disconnect(self, websocket: WebSocket) -> None:
        self.clients.discard(websocket)
        logger.info("WebSocket client disconnected ({} total)", len(self.clients))

    async def broadcast(self, entries: list[SweepAttempt]) -> None:
        payload = self.message(entries)
        for websocket in list(self.clients):
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.debug("Dropping websocket client after send failure: {}", e)
                self.clients.discard(websocket)

    def on_append(self, snapshot: list[SweepAttempt]) -> None:
        if not self.clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def create_app(settings: AppSettings | None = None, gateway_factory: GatewayFactory | None = None) -> FastAPI:
    settings = settings or AppSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = SweepService(settings, gateway_factory=gateway_factory)
        hub = TransactionLogHub(service.ledger)
        service.ledger.add_listener(hub.on_append)
        app.state.service = service
        app.state.hub = hub
        await service.start_configured_watches()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Fund Sweeper API", lifespan=lifespan)

    def service_of(request: Request) -> SweepService:
        return request.app.state.service

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/start-monitoring")
    async def start_monitoring(body: StartMonitoringIn, request: Request):
        service = service_of(request)
        try:
            signer = derive_keypair(body.seed, path=settings.derivation_path)
        except KeyDerivationError as e:
            logger.error("Error deriving key pair: {}", e)
            return JSONResponse(status_code=500, content={"message": "Error deriving key pair", "error": str(e)})
        try:
            address = await service.start_monitoring(
                signer, body.secure_wallet, body.network, token_mint=body.token_mint
            )
        except AlreadyMonitoringError as e:
            return JSONResponse(
                status_code=409, content={"message": "Monitoring already active", "publicKey": e.address}
            )
        except (InvalidAddressError, ValueError) as e:
            return JSONResponse(status_code=400, content={"message": "Invalid monitoring request", "error": str(e)})
        except Exception as e:
            logger.exception("Error starting monitoring for {}: {}", signer.pubkey(), e)
            return JSONResponse(status_code=502, content={"message": "Error starting monitoring", "error": str(e)})
        return {"message": "Monitoring started", "publicKey": address}

    @app.post("/stop-monitoring")
    async def stop_monitoring(body: StopMonitoringIn, request: Request):
        try:
            await service_of(request).stop_monitoring(body.public_key)
        except NotFoundError:
            return JSONResponse(status_code=400, content={"message": "Monitoring not found for this public key"})
        except Exception as e:
            logger.exception("Error stopping monitoring for {}: {}", body.public_key, e)
            return JSONResponse(status_code=502, content={"message": "Error stopping monitoring", "error": str(e)})
        return {"message": "Monitoring stopped"}

    @app.get("/transactions")
    def list_transactions(request: Request):
        return transaction_log(service_of(request).ledger.list_all())

    @app.get("/monitoring")
    def list_monitoring(request: Request):
        return [WatchOut.from_model(w).model_dump(by_alias=True) for w in service_of(request).registry.list()]

    @app.get("/summary")
    def summary(request: Request):
        s = get_summary(service_of(request).ledger)
        return {
            "total": s.total,
            "confirmed": s.confirmed,
            "failed": s.failed,
            "submitted": s.submitted,
            "swept": {k: float(v) for k, v in s.swept.items()},
        }

    @app.websocket("/ws")
    async def transaction_log_ws(websocket: WebSocket):
        hub: TransactionLogHub = websocket.app.state.hub
        await hub.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    return app


settings = AppSettings()
app = create_app(settings)


def main():
    import uvicorn

    logger.remove()
    logger.add(lambda m: print(m, end=""), level=settings.log_level)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
