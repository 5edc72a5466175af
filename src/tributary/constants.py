"""Program ids, seeds and protocol constants shared with the on-ledger program."""

from __future__ import annotations

from solders.pubkey import Pubkey


DEFAULT_PROGRAM_ID = Pubkey.from_string("TRibg8W8zmPHQqWtyAD1rEBRXEdyU13Mu6qX1Sg42tJ")

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

CONFIG_SEED = b"config"
GATEWAY_SEED = b"gateway"
USER_PAYMENT_SEED = b"user_payment"
PAYMENT_POLICY_SEED = b"payment_policy"
PAYMENTS_SEED = b"payments"

MAX_FEE_BPS = 10_000
MEMO_SIZE = 64
GATEWAY_NAME_SIZE = 32
GATEWAY_URL_SIZE = 64

DEFAULT_NETWORK = "solana-devnet"
DEFAULT_SCHEME = "deferred"
