"""
Byte layouts of the program's accounts and instruction arguments.

Each account type is described once, as an ordered list of typed fields.
The same descriptor decodes account data, encodes it (tests, fixtures),
yields the exact account size used as a `dataSize` filter, and yields the
byte offset of any fixed-position field used in a `memcmp` filter, so the
codec and the index offsets cannot drift apart.

Encoding is Borsh, with the 8-byte Anchor discriminator in front.
"""

from __future__ import annotations

import hashlib
import re
import struct
from dataclasses import dataclass, fields as dataclass_fields
from typing import Any, Generic, Optional, TypeVar

from solders.pubkey import Pubkey

from .errors import LayoutError, UnknownVariantError
from .state import (
    FrequencyKind,
    PaymentFrequency,
    PaymentGateway,
    PaymentPolicy,
    PaymentStatus,
    ProgramConfig,
    Subscription,
    UserPayment,
)


DISCRIMINATOR_SIZE = 8

T = TypeVar("T")


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def account_discriminator(account_name: str) -> bytes:
    """sha256("account:<Name>")[:8]"""
    return hashlib.sha256(f"account:{account_name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def instruction_discriminator(instruction_name: str) -> bytes:
    """sha256("global:<snake_name>")[:8]"""
    return hashlib.sha256(f"global:{_snake_case(instruction_name)}".encode()).digest()[:DISCRIMINATOR_SIZE]


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------


class Codec:
    """Encodes one value. `size` is None when the encoding length varies."""

    size: Optional[int] = None
    # Bytes the program budgets for this field when sizing the account.
    allocated: int = 0

    def encode(self, value: Any) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes, offset: int) -> tuple[Any, int]:
        raise NotImplementedError


def _take(data: bytes, offset: int, size: int) -> bytes:
    end = offset + size
    if end > len(data):
        raise LayoutError(f"Account data too short: need {end} bytes, have {len(data)}")
    return data[offset:end]


class IntCodec(Codec):
    def __init__(self, fmt: str):
        self._struct = struct.Struct("<" + fmt)
        self.size = self.allocated = self._struct.size

    def encode(self, value: int) -> bytes:
        try:
            return self._struct.pack(value)
        except struct.error as e:
            raise LayoutError(f"Cannot encode {value!r}: {e}") from e

    def decode(self, data: bytes, offset: int) -> tuple[int, int]:
        (value,) = self._struct.unpack(_take(data, offset, self.size))
        return value, offset + self.size


class BoolCodec(Codec):
    size = allocated = 1

    def encode(self, value: bool) -> bytes:
        return b"\x01" if value else b"\x00"

    def decode(self, data: bytes, offset: int) -> tuple[bool, int]:
        raw = _take(data, offset, 1)[0]
        if raw not in (0, 1):
            raise LayoutError(f"Invalid bool byte {raw} at offset {offset}")
        return raw == 1, offset + 1


class PubkeyCodec(Codec):
    size = allocated = 32

    def encode(self, value: Pubkey) -> bytes:
        return bytes(value)

    def decode(self, data: bytes, offset: int) -> tuple[Pubkey, int]:
        return Pubkey.from_bytes(_take(data, offset, 32)), offset + 32


class FixedBytesCodec(Codec):
    def __init__(self, size: int):
        self.size = self.allocated = size

    def encode(self, value: bytes) -> bytes:
        raw = bytes(value)
        if len(raw) != self.size:
            raise LayoutError(f"Expected {self.size} bytes, got {len(raw)}")
        return raw

    def decode(self, data: bytes, offset: int) -> tuple[bytes, int]:
        return bytes(_take(data, offset, self.size)), offset + self.size


class ReservedCodec(FixedBytesCodec):
    """Trailing reserved space. Tolerates data cut short by earlier variable fields."""

    def decode(self, data: bytes, offset: int) -> tuple[bytes, int]:
        raw = bytes(data[offset:offset + self.size])
        return raw + bytes(self.size - len(raw)), offset + self.size


class OptionCodec(Codec):
    def __init__(self, inner: Codec):
        self.inner = inner
        self.allocated = 1 + inner.allocated

    def encode(self, value: Any) -> bytes:
        if value is None:
            return b"\x00"
        return b"\x01" + self.inner.encode(value)

    def decode(self, data: bytes, offset: int) -> tuple[Any, int]:
        tag = _take(data, offset, 1)[0]
        if tag == 0:
            return None, offset + 1
        if tag == 1:
            return self.inner.decode(data, offset + 1)
        raise LayoutError(f"Invalid option tag {tag} at offset {offset}")


U8 = IntCodec("B")
U16 = IntCodec("H")
U32 = IntCodec("I")
U64 = IntCodec("Q")
I64 = IntCodec("q")
BOOL = BoolCodec()
PUBKEY = PubkeyCodec()


class PaymentStatusCodec(Codec):
    size = allocated = 1
    _TAGS = (PaymentStatus.ACTIVE, PaymentStatus.PAUSED)

    def encode(self, value: PaymentStatus) -> bytes:
        return bytes([self._TAGS.index(PaymentStatus(value))])

    def decode(self, data: bytes, offset: int) -> tuple[PaymentStatus, int]:
        tag = _take(data, offset, 1)[0]
        if tag >= len(self._TAGS):
            raise UnknownVariantError("PaymentStatus", tag)
        return self._TAGS[tag], offset + 1


class PaymentFrequencyCodec(Codec):
    allocated = 1 + 8
    _TAGS = (
        FrequencyKind.DAILY,
        FrequencyKind.WEEKLY,
        FrequencyKind.MONTHLY,
        FrequencyKind.QUARTERLY,
        FrequencyKind.SEMI_ANNUALLY,
        FrequencyKind.ANNUALLY,
        FrequencyKind.CUSTOM,
    )

    def encode(self, value: PaymentFrequency) -> bytes:
        tag = bytes([self._TAGS.index(value.kind)])
        if value.kind == FrequencyKind.CUSTOM:
            return tag + U64.encode(value.interval_seconds)
        return tag

    def decode(self, data: bytes, offset: int) -> tuple[PaymentFrequency, int]:
        tag = _take(data, offset, 1)[0]
        if tag >= len(self._TAGS):
            raise UnknownVariantError("PaymentFrequency", tag)
        kind = self._TAGS[tag]
        if kind == FrequencyKind.CUSTOM:
            interval, end = U64.decode(data, offset + 1)
            try:
                return PaymentFrequency.custom(interval), end
            except ValueError as e:
                raise LayoutError(str(e)) from e
        return PaymentFrequency(kind), offset + 1


FREQUENCY = PaymentFrequencyCodec()
STATUS = PaymentStatusCodec()


@dataclass(frozen=True)
class LayoutField:
    name: str
    codec: Codec


class StructCodec(Codec, Generic[T]):
    """Borsh struct: fields in order, decoded into a dataclass."""

    def __init__(self, record_cls: type[T], fields: list[LayoutField]):
        self.record_cls = record_cls
        self.fields = fields
        self.allocated = sum(f.codec.allocated for f in fields)
        names = {f.name for f in dataclass_fields(record_cls)}
        missing = names.symmetric_difference(f.name for f in fields)
        if missing:
            raise LayoutError(f"{record_cls.__name__} layout out of sync: {sorted(missing)}")

    def encode(self, value: T) -> bytes:
        return b"".join(f.codec.encode(getattr(value, f.name)) for f in self.fields)

    def decode(self, data: bytes, offset: int) -> tuple[T, int]:
        values = {}
        for f in self.fields:
            values[f.name], offset = f.codec.decode(data, offset)
        return self.record_cls(**values), offset


SUBSCRIPTION = StructCodec(
    Subscription,
    [
        LayoutField("amount", U64),
        LayoutField("auto_renew", BOOL),
        LayoutField("max_renewals", OptionCodec(U32)),
        LayoutField("payment_frequency", FREQUENCY),
        LayoutField("next_payment_due", I64),
        LayoutField("reserved", FixedBytesCodec(97)),
    ],
)


class PolicyTypeCodec(Codec):
    """Tagged union of policy variants, budgeted at a fixed 128 bytes."""

    allocated = 128
    _VARIANTS = {0: ("Subscription", Subscription, SUBSCRIPTION)}
    _RESERVED = {1: "Installment", 2: "OneTime"}

    def encode(self, value: Any) -> bytes:
        for tag, (_, cls, codec) in self._VARIANTS.items():
            if isinstance(value, cls):
                return bytes([tag]) + codec.encode(value)
        raise UnknownVariantError("PolicyType", type(value).__name__)

    def decode(self, data: bytes, offset: int) -> tuple[Any, int]:
        tag = _take(data, offset, 1)[0]
        variant = self._VARIANTS.get(tag)
        if variant is None:
            raise UnknownVariantError("PolicyType", self._RESERVED.get(tag, tag))
        return variant[2].decode(data, offset + 1)


POLICY_TYPE = PolicyTypeCodec()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountLayout(Generic[T]):
    """Discriminator + struct, sized to the program's allocation."""

    def __init__(self, account_name: str, record_cls: type[T], fields: list[LayoutField]):
        self.account_name = account_name
        self.discriminator = account_discriminator(account_name)
        self.struct = StructCodec(record_cls, fields)
        self.space = DISCRIMINATOR_SIZE + self.struct.allocated

    @property
    def record_cls(self) -> type[T]:
        return self.struct.record_cls

    def offset_of(self, field_name: str) -> int:
        """Byte offset of a field; only fields behind fixed-size fields have one."""
        offset = DISCRIMINATOR_SIZE
        for f in self.struct.fields:
            if f.name == field_name:
                return offset
            if f.codec.size is None:
                raise LayoutError(
                    f"{self.account_name}.{field_name} follows variable-size field {f.name}"
                )
            offset += f.codec.size
        raise LayoutError(f"{self.account_name} has no field {field_name}")

    def matches(self, data: bytes) -> bool:
        return len(data) == self.space and data[:DISCRIMINATOR_SIZE] == self.discriminator

    def decode(self, data: bytes) -> T:
        if data[:DISCRIMINATOR_SIZE] != self.discriminator:
            raise LayoutError(f"Account is not a {self.account_name} (discriminator mismatch)")
        record, _ = self.struct.decode(bytes(data), DISCRIMINATOR_SIZE)
        return record

    def encode(self, record: T) -> bytes:
        body = self.discriminator + self.struct.encode(record)
        if len(body) > self.space:
            overflow = body[self.space:]
            if any(overflow):
                raise LayoutError(f"{self.account_name} encoding exceeds {self.space} bytes")
            body = body[:self.space]
        return body + bytes(self.space - len(body))


PROGRAM_CONFIG = AccountLayout(
    "ProgramConfig",
    ProgramConfig,
    [
        LayoutField("admin", PUBKEY),
        LayoutField("fee_recipient", PUBKEY),
        LayoutField("protocol_fee_bps", U16),
        LayoutField("max_policies_per_user", U32),
        LayoutField("emergency_pause", BOOL),
        LayoutField("bump", U8),
        LayoutField("reserved", ReservedCodec(256)),
    ],
)

PAYMENT_GATEWAY = AccountLayout(
    "PaymentGateway",
    PaymentGateway,
    [
        LayoutField("authority", PUBKEY),
        LayoutField("fee_recipient", PUBKEY),
        LayoutField("gateway_fee_bps", U16),
        LayoutField("is_active", BOOL),
        LayoutField("total_processed", U64),
        LayoutField("created_at", I64),
        LayoutField("bump", U8),
        LayoutField("name", FixedBytesCodec(32)),
        LayoutField("url", FixedBytesCodec(64)),
        LayoutField("signer", PUBKEY),
        LayoutField("reserved", ReservedCodec(128)),
    ],
)

USER_PAYMENT = AccountLayout(
    "UserPayment",
    UserPayment,
    [
        LayoutField("owner", PUBKEY),
        LayoutField("token_account", PUBKEY),
        LayoutField("token_mint", PUBKEY),
        LayoutField("active_policies_count", U32),
        LayoutField("created_at", I64),
        LayoutField("updated_at", I64),
        LayoutField("is_active", BOOL),
        LayoutField("bump", U8),
        LayoutField("reserved", ReservedCodec(256)),
    ],
)

PAYMENT_POLICY = AccountLayout(
    "PaymentPolicy",
    PaymentPolicy,
    [
        LayoutField("user_payment", PUBKEY),
        LayoutField("recipient", PUBKEY),
        LayoutField("gateway", PUBKEY),
        LayoutField("policy_type", POLICY_TYPE),
        LayoutField("status", STATUS),
        LayoutField("memo", FixedBytesCodec(64)),
        LayoutField("total_paid", U64),
        LayoutField("payment_count", U32),
        LayoutField("created_at", I64),
        LayoutField("updated_at", I64),
        LayoutField("policy_id", U32),
        LayoutField("bump", U8),
        LayoutField("reserved", ReservedCodec(256)),
    ],
)


def encode_args(*pairs: tuple[Codec, Any]) -> bytes:
    """Borsh-encode instruction arguments in order."""
    return b"".join(codec.encode(value) for codec, value in pairs)
