from __future__ import annotations

import argparse
import sys
from pathlib import Path

import yaml

from fund_sweeper.errors import KeyDerivationError
from fund_sweeper.keys import SOLANA_DERIVATION_PATH, keypair_from_watch


def load_watches_yaml(path: Path) -> dict:
    if not path.exists():
        return {"watches": []}
    return yaml.safe_load(path.read_text()) or {"watches": []}


def save_watches_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))


def build_entry(
    destination: str,
    network: str,
    secret_key: str | None = None,
    seed: str | None = None,
    token_mint: str | None = None,
) -> dict:
    # Accept either a base58 secret key or a recovery phrase, never both
    if bool(secret_key) == bool(seed):
        raise ValueError("Provide exactly one of secret_key or seed")
    item: dict = {"destination": destination, "network": network}
    if secret_key:
        item["secret_key"] = secret_key
    else:
        item["seed"] = " ".join(seed.split())
    if token_mint:
        item["token_mint"] = token_mint
    return item


def upsert(watches: list[dict], address: str, item: dict) -> bool:
    """Insert or replace the watch for (address, token_mint). Returns True if replaced."""
    mint = item.get("token_mint")
    for i, w in enumerate(watches):
        if w.get("address") == address and w.get("token_mint") == mint:
            watches[i] = {"address": address, **item}
            return True
    watches.append({"address": address, **item})
    return False


def main() -> int:
    p = argparse.ArgumentParser(description="Add a watch to config/watches.yaml")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--secret-key", help="Base58 secret key of the watched wallet")
    src.add_argument("--seed", help="Recovery phrase of the watched wallet (space separated)")
    p.add_argument("--destination", required=True, help="Secure wallet receiving the swept funds")
    p.add_argument("--network", default="devnet", help="Cluster name or RPC URL (default: devnet)")
    p.add_argument("--token-mint", help="Sweep this SPL token instead of SOL")
    p.add_argument("--derivation-path", default=SOLANA_DERIVATION_PATH)
    p.add_argument("--watches-yaml", default="config/watches.yaml", help="Path to watches.yaml")
    args = p.parse_args()

    item = build_entry(args.destination, args.network, args.secret_key, args.seed, args.token_mint)
    try:
        address = str(keypair_from_watch(item, path=args.derivation_path).pubkey())
    except KeyDerivationError as e:
        print(f"Could not derive the watched wallet: {e}", file=sys.stderr)
        return 1

    path = Path(args.watches_yaml)
    data = load_watches_yaml(path)
    watches: list[dict] = data.get("watches") or []
    replaced = upsert(watches, address, item)
    data["watches"] = watches
    save_watches_yaml(path, data)
    print(f"{'Updated' if replaced else 'Added'} watch for {address} in {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
