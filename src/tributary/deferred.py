"""
Deferred-payment protocol handler.

Turns a one-time, signed-but-unsubmitted subscription transaction into a
reusable bearer credential:

1. no credential and no proof: answer 402 with a quote;
2. bearer credential: check it, re-check its policy is still active;
3. payment proof: check scheme/network, pre-verify, otherwise simulate,
   submit, confirm and re-verify before issuing a credential.

The handler keeps no state between requests and never raises across the
request boundary: every outcome is a `DeferredResponse`.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .audit import AuditTrail, EventType
from .config import DeferredConfig
from .credentials import AccessClaims, CredentialIssuer
from .errors import (
    CredentialError,
    CredentialExpiredError,
    PaymentProofError,
    SimulationError,
    SubmissionError,
    TributaryError,
)
from .layout import instruction_discriminator
from .pda import to_pubkey
from .proof import AnyTransaction, PaymentProof
from .rpc import LedgerRpcClient
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

PayerExtractor = Callable[[AnyTransaction, Pubkey], Pubkey]

PAYMENT_RESPONSE_HEADER = "Payment-Response"

_CREATE_POLICY_DISCRIMINATOR = instruction_discriminator("create_payment_policy")


# ── Payer identity ────────────────────────────────────────────────


def fee_payer_identity(transaction: AnyTransaction, program_id: Pubkey) -> Pubkey:
    """The transaction's declared fee payer.

    Untrusted: nothing binds the fee payer to the owner of the policy the
    transaction creates.
    """
    keys = transaction.message.account_keys
    if not keys:
        raise PaymentProofError("Payment transaction has no account keys")
    return keys[0]


def policy_owner_identity(transaction: AnyTransaction, program_id: Pubkey) -> Pubkey:
    """The `user` of the transaction's policy-creation instruction, which must have signed it."""
    message = transaction.message
    keys = message.account_keys
    for ix in message.instructions:
        if ix.program_id_index >= len(keys) or keys[ix.program_id_index] != program_id:
            continue
        if bytes(ix.data[:8]) != _CREATE_POLICY_DISCRIMINATOR:
            continue
        accounts = bytes(ix.accounts)
        if not accounts:
            raise PaymentProofError("Policy-creation instruction has no accounts")
        user_index = accounts[0]
        if user_index >= message.header.num_required_signatures:
            raise PaymentProofError("Policy owner is not a signer of the payment transaction")
        if not transaction.verify_with_results()[user_index]:
            raise PaymentProofError("Policy owner signature is invalid")
        return keys[user_index]
    raise PaymentProofError("Payment transaction does not create a payment policy")


def new_subscription_id() -> str:
    return f"sub_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


# ── Responses ─────────────────────────────────────────────────────


@dataclass
class DeferredResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    claims: Optional[AccessClaims] = None

    @property
    def access_granted(self) -> bool:
        """True only for a verified bearer credential; issuance responses carry no claims."""
        return self.status_code == 200 and self.claims is not None


def _error(status_code: int, error: str, details: Any = None) -> DeferredResponse:
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return DeferredResponse(status_code=status_code, body=body)


# ── Handler ───────────────────────────────────────────────────────


class DeferredPaymentHandler:
    """Request/response logic for a subscription-gated resource."""

    def __init__(
        self,
        config: DeferredConfig,
        rpc: LedgerRpcClient,
        verifier: PaymentVerifier,
        credentials: CredentialIssuer,
        payer_extractor: PayerExtractor = fee_payer_identity,
        audit: Optional[AuditTrail] = None,
        id_factory: Callable[[], str] = new_subscription_id,
    ):
        self.config = config
        self.rpc = rpc
        self.verifier = verifier
        self.credentials = credentials
        self.payer_extractor = payer_extractor
        self.audit = audit
        self.id_factory = id_factory
        self.program_id = to_pubkey(config.program_id, "program_id")

    def handle(
        self,
        resource_url: str,
        authorization: Optional[str] = None,
        x_payment: Optional[str] = None,
    ) -> DeferredResponse:
        try:
            if authorization and authorization.startswith("Bearer "):
                return self._handle_credential(authorization[len("Bearer "):].strip())
            if x_payment:
                return self._handle_proof(x_payment)
            return self.quote(resource_url)
        except Exception as e:
            logger.exception("Deferred payment processing failed")
            return _error(402, "Payment processing failed", f"{type(e).__name__}: {e}")

    def _audit(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)

    # ── Quote ─────────────────────────────────────────────────────

    def quote(self, resource_url: str) -> DeferredResponse:
        cfg = self.config
        subscription_id = self.id_factory()
        offer = {
            "scheme": cfg.scheme,
            "network": cfg.network,
            "resource": resource_url,
            "id": subscription_id,
            "termsUrl": cfg.terms_url,
            "amount": cfg.amount,
            "currency": cfg.currency,
            "recipient": cfg.recipient,
            "gateway": cfg.gateway,
            "tokenMint": cfg.token_mint,
            "paymentFrequency": cfg.payment_frequency,
            "autoRenew": cfg.auto_renew,
            "maxRenewals": cfg.max_renewals,
        }
        logger.info("New %s subscription quote %s for %s", cfg.scheme, subscription_id, resource_url)
        self._audit(EventType.QUOTE_ISSUED, subscription_id=subscription_id, amount=cfg.amount)
        return DeferredResponse(status_code=402, body={"accepts": [offer]})

    # ── Bearer credential ─────────────────────────────────────────

    def _handle_credential(self, token: str) -> DeferredResponse:
        try:
            claims = self.credentials.verify(token)
        except CredentialExpiredError:
            self._audit(EventType.CREDENTIAL_REJECTED, success=False, reason="expired")
            return _error(401, "Credential expired")
        except CredentialError as e:
            logger.info("Rejected credential: %s", e)
            self._audit(EventType.CREDENTIAL_REJECTED, success=False, reason=str(e))
            return _error(401, "Invalid credential")

        mismatch = self._claims_mismatch(claims)
        if mismatch:
            self._audit(
                EventType.CREDENTIAL_REJECTED,
                subscription_id=claims.subscription_id,
                policy_address=claims.policy_address,
                success=False,
                reason=mismatch,
            )
            return _error(401, "Invalid credential", mismatch)

        status = self.verifier.check_policy_active(claims.policy_address)
        if not status.success:
            self._audit(
                EventType.CREDENTIAL_REJECTED,
                subscription_id=claims.subscription_id,
                policy_address=claims.policy_address,
                success=False,
                reason=status.reason,
            )
            return _error(402, "Invalid or inactive subscription", status.reason)

        self._audit(
            EventType.CREDENTIAL_ACCEPTED,
            subscription_id=claims.subscription_id,
            policy_address=claims.policy_address,
        )
        return DeferredResponse(status_code=200, body={"claims": claims.to_dict()}, claims=claims)

    def _claims_mismatch(self, claims: AccessClaims) -> Optional[str]:
        cfg = self.config
        for name, expected in (
            ("gateway", cfg.gateway),
            ("recipient", cfg.recipient),
            ("token_mint", cfg.token_mint),
        ):
            if getattr(claims, name) != expected:
                return f"Credential {name} does not match this resource"
        return None

    # ── Payment proof ─────────────────────────────────────────────

    def _handle_proof(self, header: str) -> DeferredResponse:
        cfg = self.config
        try:
            proof = PaymentProof.decode(header)
        except PaymentProofError as e:
            self._audit(EventType.PROOF_REJECTED, success=False, reason=str(e))
            return _error(402, "Invalid payment proof", str(e))

        logger.info(
            "Received %s payment proof %s (network %s)", proof.scheme, proof.id, proof.network
        )
        if proof.scheme != cfg.scheme:
            return self._reject_proof(proof, f"Only {cfg.scheme} scheme is supported")
        if proof.network != cfg.network:
            return self._reject_proof(proof, f"Only {cfg.network} network is supported")

        try:
            transaction = proof.transaction()
            payer = self.payer_extractor(transaction, self.program_id)
        except PaymentProofError as e:
            return self._reject_proof(proof, str(e))

        self._audit(EventType.PROOF_RECEIVED, subscription_id=proof.id, payer=str(payer))

        pre_check = self._verify(payer)
        if pre_check.success:
            logger.info("Existing subscription %s found for %s", pre_check.policy_address, payer)
            return self._grant(
                proof,
                payer,
                pre_check.policy_address,
                message=f"Existing {cfg.scheme} subscription verified. Use JWT for future access.",
            )

        try:
            signature = self._submit(proof, transaction)
        except SimulationError as e:
            self._audit(
                EventType.SIMULATION_FAILED,
                subscription_id=proof.id,
                payer=str(payer),
                success=False,
                details={"err": e.details},
            )
            return _error(402, "Transaction simulation failed", {"err": e.details, "logs": e.logs})
        except SubmissionError as e:
            self._audit(
                EventType.TRANSACTION_FAILED,
                subscription_id=proof.id,
                payer=str(payer),
                success=False,
                reason=str(e),
            )
            return _error(402, "Transaction failed on-chain", e.details if e.details is not None else str(e))

        verification = self._verify(payer)
        if not verification.success:
            self._audit(
                EventType.VERIFICATION_FAILED,
                subscription_id=proof.id,
                payer=str(payer),
                signature=signature,
                success=False,
                reason=verification.reason,
            )
            return _error(402, "Subscription verification failed", verification.reason)

        return self._grant(
            proof,
            payer,
            verification.policy_address,
            message=f"{cfg.scheme} subscription created successfully. Use JWT for future access.",
            signature=signature,
        )

    def _reject_proof(self, proof: PaymentProof, reason: str) -> DeferredResponse:
        logger.info("Rejected payment proof %s: %s", proof.id, reason)
        self._audit(EventType.PROOF_REJECTED, subscription_id=proof.id, success=False, reason=reason)
        return _error(402, "Invalid payment proof", reason)

    def _verify(self, payer: Pubkey):
        cfg = self.config
        return self.verifier.verify(payer, cfg.amount, cfg.token_mint, cfg.gateway, cfg.recipient)

    def _submit(self, proof: PaymentProof, transaction: AnyTransaction) -> str:
        raw = proof.serialized_transaction
        simulation = self.rpc.simulate_transaction(raw)
        if not simulation.success:
            logger.info("Simulation failed for %s: %s", proof.id, simulation.err)
            raise SimulationError("Transaction simulation failed", details=simulation.err, logs=simulation.logs)
        logger.info("Simulation ok for %s", proof.id)

        signature = self.rpc.send_raw_transaction(raw)
        self._audit(
            EventType.TRANSACTION_SUBMITTED,
            subscription_id=proof.id,
            signature=signature,
            details={"legacy": isinstance(transaction, Transaction)},
        )
        self.rpc.confirm_transaction(signature)
        return signature

    def _grant(
        self,
        proof: PaymentProof,
        payer: Pubkey,
        policy_address: Optional[Pubkey],
        message: str,
        signature: Optional[str] = None,
    ) -> DeferredResponse:
        cfg = self.config
        claims = AccessClaims(
            policy_address=str(policy_address),
            subscription_id=proof.id,
            amount=cfg.amount,
            recipient=cfg.recipient,
            gateway=cfg.gateway,
            token_mint=cfg.token_mint,
            payment_frequency=cfg.payment_frequency,
            auto_renew=cfg.auto_renew,
        )
        try:
            token = self.credentials.issue(claims)
        except TributaryError as e:
            return _error(402, "Credential issuance failed", str(e))

        details: dict[str, Any] = {"policyAddress": str(policy_address), "subscriptionId": proof.id}
        if signature is not None:
            details = {
                "signature": signature,
                **details,
                "explorerUrl": cfg.explorer_url(signature),
            }
        logger.info("Credential issued for %s (policy %s)", payer, policy_address)
        self._audit(
            EventType.CREDENTIAL_ISSUED,
            subscription_id=proof.id,
            payer=str(payer),
            policy_address=str(policy_address),
            amount=cfg.amount,
            signature=signature,
        )
        header = (
            f'scheme="{cfg.scheme}", network="{cfg.network}", id="{proof.id}", '
            f"timestamp={int(time.time() * 1000)}"
        )
        return DeferredResponse(
            status_code=200,
            body={"jwt": token, "message": message, "subscriptionDetails": details},
            headers={PAYMENT_RESPONSE_HEADER: header},
        )
