"""
Tributary: recurring on-ledger payments and deferred-payment access.

Users delegate a token allowance once → gateways charge on schedule →
servers trade a signed subscription for a reusable bearer credential.
"""

__version__ = "0.1.0"

from .pda import (
    PdaResult,
    derive,
    get_associated_token_address,
    get_config_pda,
    get_gateway_pda,
    get_payment_policy_pda,
    get_payments_delegate_pda,
    get_user_payment_pda,
)
from .state import (
    PaymentFrequency,
    PaymentGateway,
    PaymentPolicy,
    PaymentStatus,
    ProgramConfig,
    Subscription,
    UserPayment,
    calculate_next_payment_due,
)
from .config import DeferredConfig, RpcConfig, load_deferred_config, load_rpc_config
from .rpc import LedgerRpcClient
from .reader import PolicyStateReader, ProgramAccount
from .composer import InstructionComposer, SubscriptionPlan, needs_approval
from .verifier import PaymentVerifier, VerificationResult
from .credentials import AccessClaims, CredentialIssuer
from .deferred import DeferredPaymentHandler, DeferredResponse, fee_payer_identity, policy_owner_identity
from .payer import DeferredPaymentClient, SubscriptionReceipt, build_payment_proof, select_deferred_offer
from .audit import AuditTrail, EventType

__all__ = [
    "PdaResult", "derive", "get_associated_token_address", "get_config_pda", "get_gateway_pda",
    "get_payment_policy_pda", "get_payments_delegate_pda", "get_user_payment_pda",
    "PaymentFrequency", "PaymentGateway", "PaymentPolicy", "PaymentStatus", "ProgramConfig",
    "Subscription", "UserPayment", "calculate_next_payment_due",
    "DeferredConfig", "RpcConfig", "load_deferred_config", "load_rpc_config",
    "LedgerRpcClient", "PolicyStateReader", "ProgramAccount",
    "InstructionComposer", "SubscriptionPlan", "needs_approval",
    "PaymentVerifier", "VerificationResult", "AccessClaims", "CredentialIssuer",
    "DeferredPaymentHandler", "DeferredResponse", "fee_payer_identity", "policy_owner_identity",
    "DeferredPaymentClient", "SubscriptionReceipt", "build_payment_proof", "select_deferred_offer",
    "AuditTrail", "EventType",
]
