from __future__ import annotations

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# Token program instruction tags
TRANSFER_IX = 3
# Associated token account program instruction tags
CREATE_IDEMPOTENT_IX = 1

# Account layouts (bytes)
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64  # mint(32) + owner(32)
MINT_DECIMALS_OFFSET = 44  # mint_authority option(4 + 32) + supply(8)


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program_id: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


def build_create_ata_idempotent_ix(
    payer: Pubkey,
    associated_account: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    # No-op on chain when the account already exists
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=associated_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
        ],
        data=bytes([CREATE_IDEMPOTENT_IX]),
    )


def build_token_transfer_ix(
    source: Pubkey,
    dest: Pubkey,
    owner: Pubkey,
    amount: int,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id=token_program_id,
        accounts=[
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
        ],
        data=bytes([TRANSFER_IX]) + int(amount).to_bytes(8, "little"),
    )


def decode_token_amount(data: bytes) -> int:
    raw = bytes(data)
    if len(raw) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
        return 0
    return int.from_bytes(raw[TOKEN_ACCOUNT_AMOUNT_OFFSET : TOKEN_ACCOUNT_AMOUNT_OFFSET + 8], "little")


def decode_mint_decimals(data: bytes) -> int:
    raw = bytes(data)
    if len(raw) <= MINT_DECIMALS_OFFSET:
        raise ValueError("Account data too short for a mint")
    return raw[MINT_DECIMALS_OFFSET]
