from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from fund_sweeper.chains.gateway import LedgerGateway
from fund_sweeper.chains.spl import build_create_ata_idempotent_ix, build_token_transfer_ix
from fund_sweeper.errors import InsufficientFundsError
from fund_sweeper.models import AssetKind, to_ui_amount


@dataclass
class TransferPlan:
    asset_kind: AssetKind
    source: str
    destination: str
    amount: int  # smallest unit
    instructions: list[Instruction] = field(default_factory=list)
    token_mint: str | None = None
    decimals: int = 9

    @property
    def ui_amount(self) -> Decimal:
        return to_ui_amount(self.amount, self.decimals)


def build_native_transfer(
    source_keypair: Keypair, destination: Pubkey, observed_balance: int, fee_reserve: int
) -> TransferPlan:
    lamports = int(observed_balance) - int(fee_reserve)
    if lamports <= 0:
        raise InsufficientFundsError(observed=int(observed_balance), reserve=int(fee_reserve))
    source = source_keypair.pubkey()
    ix = transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports))
    return TransferPlan(
        asset_kind=AssetKind.NATIVE,
        source=str(source),
        destination=str(destination),
        amount=lamports,
        instructions=[ix],
        decimals=9,
    )


async def build_token_transfer(
    gateway: LedgerGateway,
    source_keypair: Keypair,
    destination: Pubkey,
    mint: Pubkey,
    source_token_account: Pubkey,
    observed_token_amount: int,
    decimals: int = 0,
) -> TransferPlan:
    """Build the ensure-account + transfer pair for a token sweep.

    The destination's associated token account is created idempotently in the
    same transaction, so a missing account never leaves a half-applied sweep.
    Any positive amount is swept; no fee reserve applies to tokens.
    """
    amount = int(observed_token_amount)
    if amount <= 0:
        raise InsufficientFundsError(observed=amount)
    owner = source_keypair.pubkey()
    dest_ata = await gateway.resolve_associated_token_account(destination, mint)
    logger.debug("Resolved destination token account {} for owner {} mint {}", dest_ata, destination, mint)
    instructions = [
        build_create_ata_idempotent_ix(payer=owner, associated_account=dest_ata, owner=destination, mint=mint),
        build_token_transfer_ix(source=source_token_account, dest=dest_ata, owner=owner, amount=amount),
    ]
    return TransferPlan(
        asset_kind=AssetKind.TOKEN,
        source=str(owner),
        destination=str(destination),
        amount=amount,
        instructions=instructions,
        token_mint=str(mint),
        decimals=decimals,
    )
