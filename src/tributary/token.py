"""Token-account helpers: associated accounts, delegation approval, account state."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .constants import ASSOCIATED_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from .errors import LayoutError
from .pda import PubkeyLike, get_associated_token_address, to_pubkey


TOKEN_ACCOUNT_SIZE = 165

_APPROVE = 4
_CREATE_IDEMPOTENT = 1


@dataclass(frozen=True)
class TokenAccountState:
    """The fields of a token account that delegation decisions depend on."""

    mint: Pubkey
    owner: Pubkey
    amount: int
    delegate: Optional[Pubkey]
    delegated_amount: int

    @classmethod
    def from_bytes(cls, data: bytes) -> TokenAccountState:
        if len(data) < TOKEN_ACCOUNT_SIZE:
            raise LayoutError(f"Token account data too short: {len(data)} bytes")
        mint = Pubkey.from_bytes(data[0:32])
        owner = Pubkey.from_bytes(data[32:64])
        (amount,) = struct.unpack_from("<Q", data, 64)
        (delegate_tag,) = struct.unpack_from("<I", data, 72)
        delegate = Pubkey.from_bytes(data[76:108]) if delegate_tag == 1 else None
        (delegated_amount,) = struct.unpack_from("<Q", data, 121)
        return cls(
            mint=mint,
            owner=owner,
            amount=amount,
            delegate=delegate,
            delegated_amount=delegated_amount,
        )

    def to_bytes(self) -> bytes:
        """Serialize to the 165-byte token account layout (initialized state)."""
        delegate = (
            struct.pack("<I", 1) + bytes(self.delegate)
            if self.delegate is not None
            else struct.pack("<I", 0) + bytes(32)
        )
        return (
            bytes(self.mint)
            + bytes(self.owner)
            + struct.pack("<Q", self.amount)
            + delegate
            + b"\x01"  # initialized
            + struct.pack("<I", 0) + bytes(8)
            + struct.pack("<Q", self.delegated_amount)
            + struct.pack("<I", 0) + bytes(32)
        )


def create_associated_token_account(
    payer: PubkeyLike,
    owner: PubkeyLike,
    token_mint: PubkeyLike,
    idempotent: bool = False,
) -> Instruction:
    """Instruction creating the associated token account of (owner, mint)."""
    owner_key = to_pubkey(owner, "owner")
    mint_key = to_pubkey(token_mint, "token_mint")
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([_CREATE_IDEMPOTENT]) if idempotent else b"",
        [
            AccountMeta(to_pubkey(payer, "payer"), is_signer=True, is_writable=True),
            AccountMeta(get_associated_token_address(owner_key, mint_key), is_signer=False, is_writable=True),
            AccountMeta(owner_key, is_signer=False, is_writable=False),
            AccountMeta(mint_key, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def approve(
    source: PubkeyLike,
    delegate: PubkeyLike,
    owner: PubkeyLike,
    amount: int,
) -> Instruction:
    """Grant `delegate` the right to move up to `amount` base units from `source`."""
    if amount < 0:
        raise ValueError("Approval amount must be >= 0")
    return Instruction(
        TOKEN_PROGRAM_ID,
        bytes([_APPROVE]) + struct.pack("<Q", amount),
        [
            AccountMeta(to_pubkey(source, "source"), is_signer=False, is_writable=True),
            AccountMeta(to_pubkey(delegate, "delegate"), is_signer=False, is_writable=False),
            AccountMeta(to_pubkey(owner, "owner"), is_signer=True, is_writable=False),
        ],
    )
