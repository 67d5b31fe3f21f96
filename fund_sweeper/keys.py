from __future__ import annotations

from typing import Iterable

import base58
from bip_utils import Bip32Slip10Ed25519, Bip39SeedGenerator
from solders.keypair import Keypair

from fund_sweeper.errors import KeyDerivationError

SOLANA_DERIVATION_PATH = "m/44'/501'/0'/0'"


def derive_keypair(seed: str | Iterable[str], path: str = SOLANA_DERIVATION_PATH, passphrase: str = "") -> Keypair:
    """Derive the Solana signing keypair for a BIP39 recovery phrase.

    `seed` is either the phrase or its list of words. Derivation follows
    SLIP-0010 for ed25519, the scheme wallets use for Solana BIP44 paths.
    """
    phrase = seed if isinstance(seed, str) else " ".join(w.strip() for w in seed)
    phrase = " ".join(phrase.split())
    if not phrase:
        raise KeyDerivationError("Empty recovery phrase")
    try:
        seed_bytes = Bip39SeedGenerator(phrase).Generate(passphrase)
        node = Bip32Slip10Ed25519.FromSeed(seed_bytes).DerivePath(path)
        secret = node.PrivateKey().Raw().ToBytes()
        return Keypair.from_seed(secret)
    except Exception as e:
        raise KeyDerivationError(str(e)) from e


def keypair_from_secret(secret_key: str) -> Keypair:
    """Load a keypair from a base58 encoded 64-byte secret key (or 32-byte seed)."""
    try:
        raw = base58.b58decode(secret_key.strip())
    except Exception as e:
        raise KeyDerivationError(f"Invalid base58 secret key: {e}") from e
    if len(raw) not in (32, 64):
        raise KeyDerivationError(f"Secret key must be 32 or 64 bytes, got {len(raw)}")
    try:
        return Keypair.from_bytes(raw) if len(raw) == 64 else Keypair.from_seed(raw)
    except Exception as e:
        raise KeyDerivationError(str(e)) from e


def keypair_from_watch(entry: dict, path: str = SOLANA_DERIVATION_PATH) -> Keypair:
    if entry.get("secret_key"):
        return keypair_from_secret(str(entry["secret_key"]))
    seed = entry.get("seed")
    if not seed:
        raise KeyDerivationError("Watch entry has neither secret_key nor seed")
    return derive_keypair(seed, path=path)
