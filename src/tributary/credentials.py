"""
Bearer access credentials.

A credential is a signed JWT naming the policy it was issued against. It
is self-contained: a server only needs the signing key to check it, plus a
policy-status read to make sure the subscription is still active.
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass, replace
from typing import Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from .config import ONE_YEAR_SECONDS
from .errors import CredentialError, CredentialExpiredError

SigningKey = Union[str, bytes, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]

_CLAIM_NAMES = {
    "policy_address": "policyAddress",
    "subscription_id": "subscriptionId",
    "amount": "amount",
    "recipient": "recipient",
    "gateway": "gateway",
    "token_mint": "tokenMint",
    "payment_frequency": "paymentFrequency",
    "auto_renew": "autoRenew",
}


@dataclass
class AccessClaims:
    policy_address: str
    subscription_id: str
    amount: int
    recipient: str
    gateway: str
    token_mint: str
    payment_frequency: str
    auto_renew: bool
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> dict:
        data = {wire: getattr(self, attr) for attr, wire in _CLAIM_NAMES.items()}
        if self.issued_at is not None:
            data["iat"] = self.issued_at
        if self.expires_at is not None:
            data["exp"] = self.expires_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> AccessClaims:
        try:
            values = {attr: data[wire] for attr, wire in _CLAIM_NAMES.items()}
        except KeyError as e:
            raise CredentialError(f"Credential missing claim: {e.args[0]}") from e
        return cls(**values, issued_at=data.get("iat"), expires_at=data.get("exp"))


class CredentialIssuer:
    """Signs and checks access credentials."""

    def __init__(
        self,
        signing_key: SigningKey,
        algorithm: str = "HS256",
        ttl_seconds: int = ONE_YEAR_SECONDS,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero")
        self._signing_key = signing_key
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        if isinstance(signing_key, (ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey)):
            self._verification_key = signing_key.public_key()
        else:
            self._verification_key = signing_key

    @classmethod
    def from_secret(cls, secret: str, ttl_seconds: int = ONE_YEAR_SECONDS) -> CredentialIssuer:
        if not secret:
            raise ValueError("Credential secret must not be empty")
        return cls(secret, "HS256", ttl_seconds)

    @classmethod
    def from_private_key(cls, key_data: str, ttl_seconds: int = ONE_YEAR_SECONDS) -> CredentialIssuer:
        key, algorithm = _parse_private_key(key_data)
        return cls(key, algorithm, ttl_seconds)

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def issue(self, claims: AccessClaims, now: Optional[int] = None) -> str:
        issued_at = int(time.time()) if now is None else now
        stamped = replace(claims, issued_at=issued_at, expires_at=issued_at + self.ttl_seconds)
        return jwt.encode(stamped.to_dict(), self._signing_key, algorithm=self._algorithm)

    def verify(self, token: str) -> AccessClaims:
        try:
            payload = jwt.decode(
                token,
                self._verification_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise CredentialExpiredError("Credential expired") from e
        except jwt.InvalidTokenError as e:
            raise CredentialError(f"Invalid credential: {e}") from e
        return AccessClaims.from_dict(payload)


def _parse_private_key(
    key_data: str,
) -> tuple[ec.EllipticCurvePrivateKey | ed25519.Ed25519PrivateKey, str]:
    # Handle literal '\n' sequences often present in unquoted env vars.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    if "-----BEGIN" in key_data:
        try:
            key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
        except ValueError as e:
            raise ValueError(f"Unreadable PEM credential key: {e}") from e
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key, "ES256"
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key, "EdDSA"
        raise ValueError("PEM credential key must be an EC or Ed25519 private key")

    try:
        decoded = base64.b64decode(key_data, validate=True)
    except ValueError:
        decoded = b""
    if len(decoded) in (32, 64):
        return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"

    raise ValueError("Credential key must be either PEM EC/Ed25519 key or base64 Ed25519 key")
