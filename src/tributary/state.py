"""
Typed records for the accounts owned by the recurring-payments program.

Enum-like variants are explicit tagged types: a policy is a `Subscription`
today, and every unknown tag is rejected when decoding instead of being
mapped to a catch-all.
"""

from __future__ import annotations

import calendar
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from solders.pubkey import Pubkey

from .constants import GATEWAY_NAME_SIZE, GATEWAY_URL_SIZE, MAX_FEE_BPS, MEMO_SIZE


SECONDS_PER_DAY = 86_400


class PaymentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class FrequencyKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semiAnnually"
    ANNUALLY = "annually"
    CUSTOM = "custom"


_MONTHS_PER_PERIOD = {
    FrequencyKind.MONTHLY: 1,
    FrequencyKind.QUARTERLY: 3,
    FrequencyKind.SEMI_ANNUALLY: 6,
    FrequencyKind.ANNUALLY: 12,
}

_SECONDS_PER_PERIOD = {
    FrequencyKind.DAILY: SECONDS_PER_DAY,
    FrequencyKind.WEEKLY: 7 * SECONDS_PER_DAY,
}


@dataclass(frozen=True)
class PaymentFrequency:
    """Billing period; `custom` carries its own interval in seconds."""

    kind: FrequencyKind
    interval_seconds: Optional[int] = None

    def __post_init__(self):
        if self.kind == FrequencyKind.CUSTOM:
            if self.interval_seconds is None or self.interval_seconds <= 0:
                raise ValueError("Custom payment frequency requires interval_seconds > 0")
        elif self.interval_seconds is not None:
            raise ValueError(f"{self.kind.value} frequency does not take an interval")

    @classmethod
    def from_string(cls, value: str, custom_interval_seconds: Optional[int] = None) -> PaymentFrequency:
        try:
            kind = FrequencyKind(value)
        except ValueError:
            lowered = {k.value.lower(): k for k in FrequencyKind}
            kind = lowered.get(value.strip().lower().replace("_", "").replace("-", ""))
            if kind is None:
                raise ValueError(f"Unknown payment frequency: {value}") from None
        if kind == FrequencyKind.CUSTOM:
            return cls(kind, custom_interval_seconds)
        return cls(kind)

    @classmethod
    def custom(cls, interval_seconds: int) -> PaymentFrequency:
        return cls(FrequencyKind.CUSTOM, interval_seconds)

    def to_string(self) -> str:
        return self.kind.value

    def __str__(self) -> str:
        if self.kind == FrequencyKind.CUSTOM:
            return f"custom({self.interval_seconds}s)"
        return self.kind.value


@dataclass
class Subscription:
    """Recurring charge of a fixed amount on a schedule."""

    amount: int
    auto_renew: bool
    max_renewals: Optional[int]
    payment_frequency: PaymentFrequency
    next_payment_due: int
    reserved: bytes = field(default=bytes(97), repr=False)

    def validate(self) -> None:
        if self.amount <= 0:
            raise ValueError("Amount must be greater than zero")
        if self.max_renewals is not None and self.max_renewals <= 0:
            raise ValueError("max_renewals must be greater than zero when set")


# Only variant the program implements; Installment and OneTime tags are reserved.
PolicyType = Union[Subscription]


@dataclass
class ProgramConfig:
    admin: Pubkey
    fee_recipient: Pubkey
    protocol_fee_bps: int
    max_policies_per_user: int
    emergency_pause: bool
    bump: int
    reserved: bytes = field(default=bytes(256), repr=False)


@dataclass
class PaymentGateway:
    authority: Pubkey
    fee_recipient: Pubkey
    gateway_fee_bps: int
    is_active: bool
    total_processed: int
    created_at: int
    bump: int
    name: bytes
    url: bytes
    signer: Pubkey
    reserved: bytes = field(default=bytes(128), repr=False)

    @property
    def name_text(self) -> str:
        return decode_fixed_text(self.name)

    @property
    def url_text(self) -> str:
        return decode_fixed_text(self.url)

    def to_dict(self) -> dict:
        return {
            "authority": str(self.authority),
            "fee_recipient": str(self.fee_recipient),
            "signer": str(self.signer),
            "gateway_fee_bps": self.gateway_fee_bps,
            "is_active": self.is_active,
            "total_processed": self.total_processed,
            "created_at": self.created_at,
            "name": self.name_text,
            "url": self.url_text,
        }


@dataclass
class UserPayment:
    owner: Pubkey
    token_account: Pubkey
    token_mint: Pubkey
    active_policies_count: int
    created_at: int
    updated_at: int
    is_active: bool
    bump: int
    reserved: bytes = field(default=bytes(256), repr=False)

    def to_dict(self) -> dict:
        return {
            "owner": str(self.owner),
            "token_account": str(self.token_account),
            "token_mint": str(self.token_mint),
            "active_policies_count": self.active_policies_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_active": self.is_active,
        }


@dataclass
class PaymentPolicy:
    user_payment: Pubkey
    recipient: Pubkey
    gateway: Pubkey
    policy_type: PolicyType
    status: PaymentStatus
    memo: bytes
    total_paid: int
    payment_count: int
    created_at: int
    updated_at: int
    policy_id: int
    bump: int
    reserved: bytes = field(default=bytes(256), repr=False)

    @property
    def is_active(self) -> bool:
        return self.status == PaymentStatus.ACTIVE

    @property
    def amount(self) -> int:
        if isinstance(self.policy_type, Subscription):
            return self.policy_type.amount
        raise TypeError(f"Unsupported policy type: {type(self.policy_type).__name__}")

    @property
    def next_payment_due(self) -> int:
        if isinstance(self.policy_type, Subscription):
            return self.policy_type.next_payment_due
        raise TypeError(f"Unsupported policy type: {type(self.policy_type).__name__}")

    @property
    def memo_text(self) -> str:
        return decode_memo(self.memo)

    def is_due(self, now: Optional[int] = None) -> bool:
        current = int(time.time()) if now is None else now
        return self.is_active and current >= self.next_payment_due

    def to_dict(self) -> dict:
        sub = self.policy_type
        return {
            "policy_id": self.policy_id,
            "user_payment": str(self.user_payment),
            "recipient": str(self.recipient),
            "gateway": str(self.gateway),
            "status": self.status.value,
            "amount": sub.amount,
            "auto_renew": sub.auto_renew,
            "max_renewals": sub.max_renewals,
            "payment_frequency": str(sub.payment_frequency),
            "next_payment_due": sub.next_payment_due,
            "memo": self.memo_text,
            "total_paid": self.total_paid,
            "payment_count": self.payment_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def validate_fee_bps(fee_bps: int) -> int:
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise ValueError(f"Invalid fee basis points: {fee_bps} (must be 0..{MAX_FEE_BPS})")
    return fee_bps


def encode_fixed_text(value: str, size: int) -> bytes:
    """UTF-8 encode, truncate to size and zero-pad."""
    raw = value.encode("utf-8")[:size]
    return raw + bytes(size - len(raw))


def decode_fixed_text(value: bytes) -> str:
    return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")


def encode_memo(memo: str, size: int = MEMO_SIZE) -> bytes:
    return encode_fixed_text(memo, size)


def decode_memo(memo: bytes) -> str:
    return decode_fixed_text(memo)


def encode_gateway_name(name: str) -> bytes:
    return encode_fixed_text(name, GATEWAY_NAME_SIZE)


def encode_gateway_url(url: str) -> bytes:
    return encode_fixed_text(url, GATEWAY_URL_SIZE)


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


def add_months(timestamp: int, months: int) -> int:
    """Add calendar months, keeping day-of-month and clamping to month end."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return int(dt.replace(year=year, month=month, day=day).timestamp())


def calculate_next_payment_due(current_due: int, frequency: PaymentFrequency, now: int) -> int:
    """Roll a due date forward by whole periods until it is strictly after `now`."""
    next_due = current_due
    if frequency.kind in _MONTHS_PER_PERIOD:
        months = _MONTHS_PER_PERIOD[frequency.kind]
        while next_due <= now:
            next_due = add_months(next_due, months)
        return next_due

    step = _SECONDS_PER_PERIOD.get(frequency.kind) or frequency.interval_seconds
    if next_due <= now:
        periods = (now - next_due) // step + 1
        next_due += periods * step
    return next_due
