"""
The X-Payment header: a signed, unsubmitted transaction wrapped in
base64-encoded JSON together with the quote it answers.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Union

from solders.transaction import Transaction, VersionedTransaction

from .errors import PaymentProofError

AnyTransaction = Union[Transaction, VersionedTransaction]

X402_VERSION = 1


@dataclass
class PaymentProof:
    scheme: str
    network: str
    id: str
    serialized_transaction: bytes
    x402_version: int = X402_VERSION

    def encode(self) -> str:
        envelope = {
            "x402Version": self.x402_version,
            "scheme": self.scheme,
            "network": self.network,
            "id": self.id,
            "payload": {
                "serializedTransaction": base64.b64encode(self.serialized_transaction).decode(),
            },
        }
        return base64.b64encode(json.dumps(envelope, separators=(",", ":")).encode()).decode()

    @classmethod
    def decode(cls, header: str) -> PaymentProof:
        try:
            envelope = json.loads(base64.b64decode(header, validate=True))
        except (binascii.Error, ValueError) as e:
            raise PaymentProofError(f"X-Payment header is not base64 JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise PaymentProofError("X-Payment payload must be a JSON object")

        payload = envelope.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("serializedTransaction"), str):
            raise PaymentProofError("X-Payment payload.serializedTransaction is required")
        for name in ("scheme", "network", "id"):
            if not isinstance(envelope.get(name), str) or not envelope[name]:
                raise PaymentProofError(f"X-Payment field '{name}' is required")

        try:
            raw = base64.b64decode(payload["serializedTransaction"], validate=True)
        except binascii.Error as e:
            raise PaymentProofError("serializedTransaction is not valid base64") from e

        version = envelope.get("x402Version", X402_VERSION)
        if not isinstance(version, int):
            raise PaymentProofError("x402Version must be an integer")

        return cls(
            scheme=envelope["scheme"],
            network=envelope["network"],
            id=envelope["id"],
            serialized_transaction=raw,
            x402_version=version,
        )

    def transaction(self) -> AnyTransaction:
        """Deserialize the carried transaction, legacy format first."""
        return decode_transaction(self.serialized_transaction)


def decode_transaction(raw: bytes) -> AnyTransaction:
    try:
        return Transaction.from_bytes(raw)
    except ValueError:
        pass
    try:
        return VersionedTransaction.from_bytes(raw)
    except ValueError as e:
        raise PaymentProofError(f"Payment transaction could not be decoded: {e}") from e
