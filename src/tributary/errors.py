"""
Tributary error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, reject, etc.).
"""

from __future__ import annotations

from typing import Any, Optional


class TributaryError(Exception):
    """Base error for all Tributary operations."""
    pass


# Input errors
class AddressError(TributaryError, ValueError):
    """Malformed public key, seed or policy id."""
    pass


class MissingFieldError(TributaryError):
    """A field required to build an instruction could not be resolved."""
    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(
            message or f"Either provide {field} or have a valid payment policy account"
        )


# Record errors
class LayoutError(TributaryError):
    """Account bytes do not decode to the expected record type."""
    pass


class UnknownVariantError(LayoutError):
    """Enum tag not known to this client (reserved or future variant)."""
    def __init__(self, enum_name: str, tag: Any):
        self.enum_name = enum_name
        self.tag = tag
        super().__init__(f"Unknown {enum_name} variant: {tag!r}")


# Ledger RPC errors
class RpcError(TributaryError):
    """The RPC node answered with a JSON-RPC error."""
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"RPC error ({code}): {message}" if code is not None else message)


class NetworkError(TributaryError):
    """Network-level failures (DNS, connection refused, timeouts)."""
    pass


class RetryableError(TributaryError):
    """Error that may succeed if retried."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


# Transaction errors
class TransactionError(TributaryError):
    """Base error for transaction simulation and submission failures."""
    def __init__(self, message: str, details: Any = None, logs: Optional[list[str]] = None):
        self.details = details
        self.logs = logs or []
        super().__init__(message)


class SimulationError(TransactionError):
    """Ledger rejected the transaction during simulation; it was not submitted."""
    pass


class SubmissionError(TransactionError):
    """Submission or confirmation failed. Side effects may have happened."""
    pass


class ConfirmationTimeoutError(SubmissionError):
    """Transaction was not confirmed within the configured timeout."""
    pass


# Protocol errors
class PaymentProofError(TributaryError):
    """X-Payment proof is malformed or does not match server configuration."""
    pass


class CredentialError(TributaryError):
    """Access credential signature or claims are invalid."""
    pass


class CredentialExpiredError(CredentialError):
    """Access credential has expired."""
    pass


class InsufficientBalanceError(TributaryError):
    """Payer's token account cannot cover the quoted amount."""
    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient balance: have {available}, need {required} base units")
