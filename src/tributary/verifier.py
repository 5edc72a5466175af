"""Checks that a payer holds an active policy matching a gateway's terms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from .errors import TributaryError
from .pda import PubkeyLike, get_user_payment_pda, to_pubkey
from .reader import PolicyStateReader

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    success: bool
    reason: Optional[str] = None
    field: Optional[str] = None
    policy_address: Optional[Pubkey] = None

    @classmethod
    def ok(cls, policy_address: Pubkey) -> VerificationResult:
        return cls(success=True, policy_address=policy_address)

    @classmethod
    def fail(
        cls,
        reason: str,
        field: Optional[str] = None,
        policy_address: Optional[Pubkey] = None,
    ) -> VerificationResult:
        return cls(success=False, reason=reason, field=field, policy_address=policy_address)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reason": self.reason,
            "field": self.field,
            "policy_address": str(self.policy_address) if self.policy_address else None,
        }


class PaymentVerifier:
    """Read-only; calling it twice against unchanged state gives the same answer."""

    def __init__(self, reader: PolicyStateReader):
        self.reader = reader

    def verify(
        self,
        payer: PubkeyLike,
        expected_amount: int,
        expected_token_mint: PubkeyLike,
        expected_gateway: PubkeyLike,
        expected_recipient: PubkeyLike,
    ) -> VerificationResult:
        """Verify the payer's newest policy for the token against the expected terms."""
        try:
            return self._verify(
                to_pubkey(payer, "payer"),
                expected_amount,
                to_pubkey(expected_token_mint, "token_mint"),
                to_pubkey(expected_gateway, "gateway"),
                to_pubkey(expected_recipient, "recipient"),
            )
        except TributaryError as e:
            logger.warning("Policy verification error: %s", e)
            return VerificationResult.fail(f"Verification error: {e}")

    def _verify(
        self,
        payer: Pubkey,
        expected_amount: int,
        expected_token_mint: Pubkey,
        expected_gateway: Pubkey,
        expected_recipient: Pubkey,
    ) -> VerificationResult:
        user_payment = get_user_payment_pda(payer, expected_token_mint, self.reader.program_id).address
        policies = self.reader.list_policies_by_user(user_payment)
        if not policies:
            return VerificationResult.fail("No payment policies found for user", field="policy")

        latest = max(policies, key=lambda p: (p.account.created_at, p.account.policy_id))
        policy = latest.account
        address = latest.address

        if not policy.is_active:
            return VerificationResult.fail(
                f"Policy status is {policy.status.value}, expected active", "status", address
            )

        if policy.amount != expected_amount:
            return VerificationResult.fail(
                f"Policy amount {policy.amount} does not match expected {expected_amount}",
                "amount",
                address,
            )

        parent = self.reader.fetch_user_payment(policy.user_payment)
        if parent is None or parent.token_mint != expected_token_mint:
            return VerificationResult.fail("Token mint does not match expected", "token_mint", address)

        if policy.gateway != expected_gateway:
            return VerificationResult.fail("Gateway does not match expected", "gateway", address)

        if policy.recipient != expected_recipient:
            return VerificationResult.fail("Recipient does not match expected", "recipient", address)

        return VerificationResult.ok(address)

    def check_policy_active(self, policy_address: PubkeyLike) -> VerificationResult:
        """Revalidation for a credential: the referenced policy must still exist and be active."""
        try:
            address = to_pubkey(policy_address, "policy_address")
            policy = self.reader.fetch_policy(address)
        except TributaryError as e:
            logger.warning("Policy lookup failed for %s: %s", policy_address, e)
            return VerificationResult.fail(f"Verification error: {e}")
        if policy is None:
            return VerificationResult.fail("Policy not found", "policy", address)
        if not policy.is_active:
            return VerificationResult.fail(
                f"Policy status is {policy.status.value}, expected active", "status", address
            )
        return VerificationResult.ok(address)
