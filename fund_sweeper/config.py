from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Public cluster endpoints, keyed the way clients name networks
CLUSTER_RPC_URLS: dict[str, str] = {
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "localnet": "http://127.0.0.1:8899",
}


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="SWEEP_", extra="allow")

    # Networks
    default_network: str = "devnet"
    rpc_urls: dict[str, str] = {}  # network -> RPC URL override
    ws_urls: dict[str, str] = {}  # network -> websocket URL override

    # Sweeping
    fee_reserve_lamports: int = 5000  # fixed network fee estimate left behind on native sweeps
    commitment: str = "confirmed"
    confirm_max_attempts: int = 3
    confirm_timeout_sec: float = 60.0
    confirm_backoff_sec: float = 0.0  # 0 retries immediately
    confirm_jitter_sec: float = 0.0
    poll_interval_sec: float = 0.5  # signature status polling cadence

    # Monitoring
    reject_duplicate_start: bool = False  # if false, a second start replaces the first watch
    derivation_path: str = "m/44'/501'/0'/0'"

    # Config files
    watches_config: str = "config/watches.yaml"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3005

    # Logging
    log_level: str = "INFO"

    # --- Validators to coerce empty strings in optional envs to zero ---
    @field_validator("confirm_backoff_sec", "confirm_jitter_sec", mode="before")
    @classmethod
    def _empty_str_to_zero(cls, v):
        if v == "":
            return 0.0
        return v

    def rpc_url_for(self, network: str | None = None) -> str:
        network = (network or self.default_network).strip()
        if network in self.rpc_urls:
            return self.rpc_urls[network]
        if network.startswith(("http://", "https://")):
            return network
        try:
            return CLUSTER_RPC_URLS[network]
        except KeyError:
            raise ValueError(f"Unknown network: {network}") from None

    def ws_url_for(self, network: str | None = None) -> str:
        network = (network or self.default_network).strip()
        if network in self.ws_urls:
            return self.ws_urls[network]
        rpc = self.rpc_url_for(network)
        ws = rpc.replace("https://", "wss://").replace("http://", "ws://")
        # solana-test-validator serves pubsub on the RPC port + 1
        if ws.endswith(":8899"):
            ws = ws[: -len("8899")] + "8900"
        return ws

    def watches_to_start(self) -> list[dict]:
        import yaml

        path = Path(self.watches_config)
        if not path.exists():
            return []
        data = yaml.safe_load(path.read_text()) or {}
        out: list[dict] = []
        for item in data.get("watches", []) or []:
            if not isinstance(item, dict):
                continue
            if not item.get("destination"):
                continue
            if not (item.get("secret_key") or item.get("seed")):
                continue
            entry = dict(item)
            entry["network"] = (item.get("network") or self.default_network).strip()
            entry["token_mint"] = item.get("token_mint") or None
            out.append(entry)
        return out
