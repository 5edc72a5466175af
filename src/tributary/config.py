"""
Configuration for the RPC client and the deferred-payment endpoint.

Defaults live on the dataclasses; `load_*` helpers overlay environment
variables so a server can be configured without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .constants import DEFAULT_NETWORK, DEFAULT_PROGRAM_ID, DEFAULT_SCHEME
from .pda import get_gateway_pda


RPC_URL_ENV = "TRIBUTARY_RPC_URL"
LEGACY_RPC_URL_ENV = "RPC_URL"
RPC_TIMEOUT_ENV = "TRIBUTARY_RPC_TIMEOUT"
RPC_MAX_RETRIES_ENV = "TRIBUTARY_RPC_MAX_RETRIES"
PROGRAM_ID_ENV = "TRIBUTARY_PROGRAM_ID"
NETWORK_ENV = "TRIBUTARY_NETWORK"

GATEWAY_AUTHORITY_ENV = "GATEWAY_AUTHORITY"
TOKEN_MINT_ENV = "TOKEN_MINT"
RECIPIENT_WALLET_ENV = "RECIPIENT_WALLET"
SUBSCRIPTION_AMOUNT_ENV = "SUBSCRIPTION_AMOUNT"
PAYMENT_FREQUENCY_ENV = "PAYMENT_FREQUENCY"
AUTO_RENEW_ENV = "AUTO_RENEW"
MAX_RENEWALS_ENV = "MAX_RENEWALS"
JWT_SECRET_ENV = "JWT_SECRET"

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_TERMS_URL = "https://tributary.so/terms"
ONE_YEAR_SECONDS = 365 * 24 * 3600

_CLUSTER_BY_NETWORK = {
    "solana-devnet": "devnet",
    "solana-testnet": "testnet",
    "solana-mainnet": None,
}


@dataclass
class RpcConfig:
    url: str = DEFAULT_RPC_URL
    commitment: str = "confirmed"
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_delay: float = 0.5
    confirm_timeout_seconds: float = 60.0
    poll_interval: float = 0.5


@dataclass
class DeferredConfig:
    """Terms a deferred-payment endpoint offers and enforces."""

    amount: int
    recipient: str
    gateway: str
    token_mint: str
    jwt_secret: str
    payment_frequency: str = "monthly"
    auto_renew: bool = False
    max_renewals: Optional[int] = None
    scheme: str = DEFAULT_SCHEME
    network: str = DEFAULT_NETWORK
    currency: str = "USDC"
    terms_url: str = DEFAULT_TERMS_URL
    credential_ttl_seconds: int = ONE_YEAR_SECONDS
    program_id: str = str(DEFAULT_PROGRAM_ID)

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Subscription amount must be greater than zero")
        if self.max_renewals is not None and self.max_renewals <= 0:
            raise ValueError("max_renewals must be greater than zero when set")

    @property
    def explorer_cluster(self) -> Optional[str]:
        return _CLUSTER_BY_NETWORK.get(self.network, "devnet")

    def explorer_url(self, signature: str) -> str:
        base = f"https://explorer.solana.com/tx/{signature}"
        cluster = self.explorer_cluster
        return f"{base}?cluster={cluster}" if cluster else base


def load_rpc_config(env: Optional[Mapping[str, str]] = None) -> RpcConfig:
    source = os.environ if env is None else env
    config = RpcConfig()
    url = source.get(RPC_URL_ENV) or source.get(LEGACY_RPC_URL_ENV)
    if url:
        config.url = url
    if source.get(RPC_TIMEOUT_ENV):
        config.timeout_seconds = float(source[RPC_TIMEOUT_ENV])
    if source.get(RPC_MAX_RETRIES_ENV):
        config.max_retries = int(source[RPC_MAX_RETRIES_ENV])
    return config


def load_deferred_config(
    env: Optional[Mapping[str, str]] = None,
    *,
    gateway: Optional[str] = None,
) -> DeferredConfig:
    """Build the endpoint terms from environment variables.

    `gateway` overrides the gateway address; otherwise it is derived from
    GATEWAY_AUTHORITY.
    """
    source = os.environ if env is None else env
    program_id = source.get(PROGRAM_ID_ENV) or str(DEFAULT_PROGRAM_ID)

    required = {
        GATEWAY_AUTHORITY_ENV: gateway or source.get(GATEWAY_AUTHORITY_ENV),
        TOKEN_MINT_ENV: source.get(TOKEN_MINT_ENV),
        RECIPIENT_WALLET_ENV: source.get(RECIPIENT_WALLET_ENV),
        JWT_SECRET_ENV: source.get(JWT_SECRET_ENV),
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ValueError(f"Deferred payment config incomplete. Set {', '.join(missing)}.")

    if gateway is None:
        gateway = str(get_gateway_pda(source[GATEWAY_AUTHORITY_ENV], program_id).address)

    max_renewals_raw = source.get(MAX_RENEWALS_ENV)
    return DeferredConfig(
        amount=int(source.get(SUBSCRIPTION_AMOUNT_ENV, "100")),
        recipient=source[RECIPIENT_WALLET_ENV],
        gateway=gateway,
        token_mint=source[TOKEN_MINT_ENV],
        jwt_secret=source[JWT_SECRET_ENV],
        payment_frequency=source.get(PAYMENT_FREQUENCY_ENV, "monthly"),
        auto_renew=source.get(AUTO_RENEW_ENV, "").lower() == "true",
        max_renewals=int(max_renewals_raw) if max_renewals_raw else None,
        network=source.get(NETWORK_ENV, DEFAULT_NETWORK),
        program_id=program_id,
    )
