"""
Read-only access to the program's accounts.

Listings use the program-accounts index with an exact size filter plus a
byte-prefix filter on one indexed field; fetches read a single account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from solders.pubkey import Pubkey

from .constants import DEFAULT_PROGRAM_ID
from .errors import LayoutError
from .layout import PAYMENT_GATEWAY, PAYMENT_POLICY, PROGRAM_CONFIG, USER_PAYMENT, AccountLayout
from .pda import PubkeyLike, get_config_pda, to_pubkey
from .rpc import LedgerRpcClient
from .state import PaymentGateway, PaymentPolicy, ProgramConfig, UserPayment

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProgramAccount(Generic[T]):
    address: Pubkey
    account: T


class PolicyStateReader:
    """Lists and fetches program accounts, decoded into typed records."""

    def __init__(self, rpc: LedgerRpcClient, program_id: PubkeyLike = DEFAULT_PROGRAM_ID):
        self.rpc = rpc
        self.program_id = to_pubkey(program_id, "program_id")

    # ── Listings ──────────────────────────────────────────────────

    def _list(
        self,
        layout: AccountLayout[T],
        field_name: Optional[str] = None,
        value: Optional[PubkeyLike] = None,
    ) -> list[ProgramAccount[T]]:
        memcmp = []
        if field_name is not None:
            memcmp.append((layout.offset_of(field_name), bytes(to_pubkey(value, field_name))))

        results = []
        for address, info in self.rpc.get_program_accounts(self.program_id, layout.space, memcmp):
            if not layout.matches(info.data):
                logger.warning(
                    "Skipping %s: not a %s account", address, layout.account_name
                )
                continue
            try:
                record = layout.decode(info.data)
            except LayoutError as e:
                logger.warning("Skipping %s: %s", address, e)
                continue
            results.append(ProgramAccount(address=address, account=record))
        return results

    def list_gateways(self) -> list[ProgramAccount[PaymentGateway]]:
        return self._list(PAYMENT_GATEWAY)

    def list_user_payments(self) -> list[ProgramAccount[UserPayment]]:
        return self._list(USER_PAYMENT)

    def list_user_payments_by_owner(self, owner: PubkeyLike) -> list[ProgramAccount[UserPayment]]:
        return self._list(USER_PAYMENT, "owner", owner)

    def list_policies(self) -> list[ProgramAccount[PaymentPolicy]]:
        return self._list(PAYMENT_POLICY)

    def list_policies_by_user(self, user_payment: PubkeyLike) -> list[ProgramAccount[PaymentPolicy]]:
        return self._list(PAYMENT_POLICY, "user_payment", user_payment)

    def list_policies_by_recipient(self, recipient: PubkeyLike) -> list[ProgramAccount[PaymentPolicy]]:
        return self._list(PAYMENT_POLICY, "recipient", recipient)

    def list_policies_by_gateway(self, gateway: PubkeyLike) -> list[ProgramAccount[PaymentPolicy]]:
        return self._list(PAYMENT_POLICY, "gateway", gateway)

    # ── Fetches ───────────────────────────────────────────────────

    def _fetch(self, layout: AccountLayout[T], address: PubkeyLike) -> Optional[T]:
        info = self.rpc.get_account_info(address)
        if info is None:
            return None
        return layout.decode(info.data)

    def fetch_program_config(self) -> Optional[ProgramConfig]:
        return self._fetch(PROGRAM_CONFIG, get_config_pda(self.program_id).address)

    def fetch_gateway(self, address: PubkeyLike) -> Optional[PaymentGateway]:
        return self._fetch(PAYMENT_GATEWAY, address)

    def fetch_user_payment(self, address: PubkeyLike) -> Optional[UserPayment]:
        return self._fetch(USER_PAYMENT, address)

    def fetch_policy(self, address: PubkeyLike) -> Optional[PaymentPolicy]:
        return self._fetch(PAYMENT_POLICY, address)
