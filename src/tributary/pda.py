"""
Deterministic address derivation.

The on-ledger program derives every account it owns from a fixed seed
namespace plus entity keys. These helpers reproduce that scheme exactly;
a different seed layout would silently address the wrong account.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Union

from solders.pubkey import Pubkey

from .constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    CONFIG_SEED,
    DEFAULT_PROGRAM_ID,
    GATEWAY_SEED,
    PAYMENT_POLICY_SEED,
    PAYMENTS_SEED,
    TOKEN_PROGRAM_ID,
    USER_PAYMENT_SEED,
)
from .errors import AddressError


PubkeyLike = Union[Pubkey, str, bytes]

_MAX_POLICY_ID = 2**32 - 1


@dataclass(frozen=True)
class PdaResult:
    address: Pubkey
    bump: int


def to_pubkey(value: PubkeyLike, name: str = "address") -> Pubkey:
    """Normalize a Pubkey, base58 string or 32 raw bytes into a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise AddressError(f"{name} must be 32 bytes, got {len(value)}")
        return Pubkey.from_bytes(bytes(value))
    if isinstance(value, str):
        try:
            return Pubkey.from_string(value.strip())
        except ValueError as e:
            raise AddressError(f"Invalid {name}: {value}") from e
    raise AddressError(f"Unsupported {name} type: {type(value).__name__}")


def policy_id_seed(policy_id: int) -> bytes:
    """Encode a policy id as the 4-byte little-endian seed."""
    if isinstance(policy_id, bool) or not isinstance(policy_id, int):
        raise AddressError(f"policy_id must be an integer, got {policy_id!r}")
    if not 1 <= policy_id <= _MAX_POLICY_ID:
        raise AddressError(f"policy_id out of range: {policy_id}")
    return struct.pack("<I", policy_id)


def _seeds(namespace: str, key_parts: tuple) -> list[bytes]:
    if namespace == "config":
        expected, prefix = 0, CONFIG_SEED
    elif namespace == "gateway":
        expected, prefix = 1, GATEWAY_SEED
    elif namespace == "user_payment":
        expected, prefix = 2, USER_PAYMENT_SEED
    elif namespace == "payment_policy":
        expected, prefix = 2, PAYMENT_POLICY_SEED
    elif namespace in ("payments", "payments_delegate"):
        expected, prefix = 0, PAYMENTS_SEED
    else:
        raise AddressError(f"Unknown seed namespace: {namespace}")

    if len(key_parts) != expected:
        raise AddressError(
            f"{namespace} takes {expected} key part(s), got {len(key_parts)}"
        )

    seeds = [prefix]
    if namespace == "payment_policy":
        user_payment, policy_id = key_parts
        seeds.append(bytes(to_pubkey(user_payment, "user_payment")))
        seeds.append(policy_id_seed(policy_id))
    else:
        seeds.extend(bytes(to_pubkey(part, namespace)) for part in key_parts)
    return seeds


def derive(namespace: str, *key_parts, program_id: PubkeyLike = DEFAULT_PROGRAM_ID) -> PdaResult:
    """Derive (address, bump) for a seed namespace and its key parts."""
    seeds = _seeds(namespace, key_parts)
    address, bump = Pubkey.find_program_address(seeds, to_pubkey(program_id, "program_id"))
    return PdaResult(address=address, bump=bump)


def get_config_pda(program_id: PubkeyLike = DEFAULT_PROGRAM_ID) -> PdaResult:
    return derive("config", program_id=program_id)


def get_gateway_pda(authority: PubkeyLike, program_id: PubkeyLike = DEFAULT_PROGRAM_ID) -> PdaResult:
    return derive("gateway", authority, program_id=program_id)


def get_user_payment_pda(
    owner: PubkeyLike,
    token_mint: PubkeyLike,
    program_id: PubkeyLike = DEFAULT_PROGRAM_ID,
) -> PdaResult:
    return derive("user_payment", owner, token_mint, program_id=program_id)


def get_payment_policy_pda(
    user_payment: PubkeyLike,
    policy_id: int,
    program_id: PubkeyLike = DEFAULT_PROGRAM_ID,
) -> PdaResult:
    return derive("payment_policy", user_payment, policy_id, program_id=program_id)


def get_payments_delegate_pda(program_id: PubkeyLike = DEFAULT_PROGRAM_ID) -> PdaResult:
    """The delegate authority the program uses to pull funds from token accounts."""
    return derive("payments", program_id=program_id)


def get_associated_token_address(owner: PubkeyLike, token_mint: PubkeyLike) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [
            bytes(to_pubkey(owner, "owner")),
            bytes(TOKEN_PROGRAM_ID),
            bytes(to_pubkey(token_mint, "token_mint")),
        ],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
