from __future__ import annotations

from loguru import logger
from solders.keypair import Keypair

from fund_sweeper.chains.gateway import GatewayFactory, GatewayPool
from fund_sweeper.config import AppSettings
from fund_sweeper.execution.orchestrator import SweepOrchestrator, SweepPolicy
from fund_sweeper.keys import keypair_from_watch
from fund_sweeper.ledger import TransactionLedger
from fund_sweeper.monitoring.registry import MonitoringRegistry


class SweepService:
    """Owns the ledger, gateways, orchestrator and registry for one process."""

    def __init__(self, settings: AppSettings, gateway_factory: GatewayFactory | None = None):
        self.settings = settings
        if gateway_factory is None:
            from fund_sweeper.chains.solana import SolanaGateway

            def gateway_factory(network: str):
                return SolanaGateway.create(settings, network)

        self.ledger = TransactionLedger()
        self.gateways = GatewayPool(gateway_factory)
        self.orchestrator = SweepOrchestrator(self.ledger, self.gateways, SweepPolicy.from_settings(settings))
        self.registry = MonitoringRegistry(
            self.orchestrator, self.gateways, reject_duplicates=settings.reject_duplicate_start
        )

    async def start_monitoring(
        self, signer: Keypair, destination: str, network: str | None = None, token_mint: str | None = None
    ) -> str:
        return await self.registry.start(
            signer, destination, (network or self.settings.default_network).strip(), token_mint=token_mint
        )

    async def stop_monitoring(self, address: str):
        return await self.registry.stop(address)

    async def start_configured_watches(self) -> int:
        started = 0
        for entry in self.settings.watches_to_start():
            try:
                signer = keypair_from_watch(entry, path=self.settings.derivation_path)
                await self.start_monitoring(
                    signer, entry["destination"], entry["network"], token_mint=entry.get("token_mint")
                )
                started += 1
            except Exception as e:
                logger.error("Could not start configured watch for {}: {}", entry.get("destination"), e)
        if started:
            logger.info("Started {} configured watch(es) from {}", started, self.settings.watches_config)
        return started

    async def shutdown(self, drain: bool = True) -> None:
        await self.registry.shutdown()
        if drain:
            await self.orchestrator.drain()
        await self.gateways.close()
