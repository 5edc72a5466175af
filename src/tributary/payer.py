"""
Client side of the deferred-payment protocol.

Requests a resource, answers the 402 quote with a signed but unsubmitted
subscription transaction, and keeps the bearer credential the server
returns for later requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from solders.keypair import Keypair

from .composer import InstructionComposer
from .constants import DEFAULT_SCHEME
from .errors import InsufficientBalanceError, PaymentProofError
from .money import format_amount
from .pda import get_associated_token_address
from .proof import X402_VERSION, AnyTransaction, PaymentProof
from .rpc import LedgerRpcClient
from .state import PaymentFrequency

logger = logging.getLogger(__name__)

DEFAULT_MEMO = "x402 subscription"


@dataclass
class DeferredOffer:
    scheme: str
    network: str
    id: str
    amount: int
    recipient: str
    gateway: str
    token_mint: str
    payment_frequency: str
    auto_renew: bool = False
    max_renewals: Optional[int] = None
    resource: Optional[str] = None
    currency: str = "USDC"
    terms_url: Optional[str] = None
    custom_interval_seconds: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> DeferredOffer:
        try:
            return cls(
                scheme=data["scheme"],
                network=data["network"],
                id=data["id"],
                amount=int(data["amount"]),
                recipient=data["recipient"],
                gateway=data["gateway"],
                token_mint=data["tokenMint"],
                payment_frequency=data["paymentFrequency"],
                auto_renew=bool(data.get("autoRenew", False)),
                max_renewals=data.get("maxRenewals"),
                resource=data.get("resource"),
                currency=data.get("currency", "USDC"),
                terms_url=data.get("termsUrl"),
                custom_interval_seconds=data.get("paymentFrequencyCustomSeconds"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentProofError(f"Malformed deferred offer: {e}") from e

    @property
    def frequency(self) -> PaymentFrequency:
        return PaymentFrequency.from_string(self.payment_frequency, self.custom_interval_seconds)


@dataclass
class SubscriptionReceipt:
    jwt: str
    policy_address: Optional[str]
    subscription_id: Optional[str]
    signature: Optional[str] = None
    explorer_url: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict) -> SubscriptionReceipt:
        details = body.get("subscriptionDetails") or {}
        return cls(
            jwt=body["jwt"],
            policy_address=details.get("policyAddress"),
            subscription_id=details.get("subscriptionId"),
            signature=details.get("signature"),
            explorer_url=details.get("explorerUrl"),
            message=body.get("message"),
        )

    def to_dict(self) -> dict:
        return {
            "policy_address": self.policy_address,
            "subscription_id": self.subscription_id,
            "signature": self.signature,
            "explorer_url": self.explorer_url,
            "message": self.message,
        }


def select_deferred_offer(body: Any, scheme: str = DEFAULT_SCHEME) -> DeferredOffer:
    """Pick the offer for `scheme` out of a 402 quote body."""
    accepts = body.get("accepts") if isinstance(body, dict) else None
    if not accepts:
        raise PaymentProofError("No payment requirements in 402 response")
    for entry in accepts:
        if isinstance(entry, dict) and entry.get("scheme") == scheme:
            return DeferredOffer.from_dict(entry)
    raise PaymentProofError(f"{scheme} scheme not offered")


def build_payment_proof(
    quote: DeferredOffer,
    transaction: AnyTransaction,
    x402_version: int = X402_VERSION,
) -> str:
    """X-Payment header value answering `quote` with a signed transaction."""
    return PaymentProof(
        scheme=quote.scheme,
        network=quote.network,
        id=quote.id,
        serialized_transaction=bytes(transaction),
        x402_version=x402_version,
    ).encode()


class DeferredPaymentClient:
    """Subscribes to deferred-payment resources with a local keypair."""

    def __init__(
        self,
        rpc: LedgerRpcClient,
        composer: InstructionComposer,
        keypair: Keypair,
        http: Optional[httpx.Client] = None,
        memo: str = DEFAULT_MEMO,
        allowed_networks: Optional[list[str]] = None,
        max_amount: Optional[int] = None,
    ):
        self.rpc = rpc
        self.composer = composer
        self.keypair = keypair
        self._http = http or httpx.Client(timeout=rpc.config.timeout_seconds)
        self.memo = memo
        self.allowed_networks = allowed_networks
        self.max_amount = max_amount

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def request_quote(self, url: str) -> DeferredOffer:
        response = self._http.get(url)
        if response.status_code != 402:
            raise PaymentProofError(f"Expected 402 quote, got {response.status_code}")
        offer = select_deferred_offer(response.json())
        self._check_offer(offer)
        return offer

    def _check_offer(self, offer: DeferredOffer) -> None:
        if self.allowed_networks is not None and offer.network not in self.allowed_networks:
            raise PaymentProofError(f"Offer network {offer.network} not allowed")
        if self.max_amount is not None and offer.amount > self.max_amount:
            raise PaymentProofError(
                f"Offer amount {offer.amount} exceeds approved max {self.max_amount}"
            )

    def prepare_proof(self, offer: DeferredOffer) -> str:
        """Compose and sign the subscription transaction for `offer` without submitting it."""
        owner = self.keypair.pubkey()
        token_account = get_associated_token_address(owner, offer.token_mint)
        state = self.rpc.get_token_account(token_account)
        available = state.amount if state is not None else 0
        if available < offer.amount:
            raise InsufficientBalanceError(available, offer.amount)

        plan = self.composer.plan_subscription(
            owner,
            offer.token_mint,
            offer.recipient,
            offer.gateway,
            offer.amount,
            offer.auto_renew,
            offer.max_renewals,
            offer.frequency,
            memo=self.memo,
            approval_amount=offer.amount,
            execute_immediately=True,
        )
        transaction = self.rpc.sign_transaction(plan.instructions, [self.keypair])
        logger.info(
            "Signed subscription %s for %s: %d instruction(s), policy %s",
            offer.id,
            format_amount(offer.amount, offer.currency),
            len(plan.instructions),
            plan.policy_address,
        )
        return build_payment_proof(offer, transaction)

    def subscribe(self, url: str) -> SubscriptionReceipt:
        offer = self.request_quote(url)
        header = self.prepare_proof(offer)
        response = self._http.get(url, headers={"X-Payment": header})
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code != 200 or "jwt" not in body:
            error = body.get("error") or response.text[:200]
            raise PaymentProofError(f"Payment rejected ({response.status_code}): {error}")
        receipt = SubscriptionReceipt.from_body(body)
        logger.info("Subscription %s active: %s", receipt.subscription_id, receipt.policy_address)
        return receipt

    def fetch(self, url: str, jwt: str) -> httpx.Response:
        return self._http.get(url, headers={"Authorization": f"Bearer {jwt}"})
