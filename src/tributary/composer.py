"""
Instruction composition for the recurring-payments program.

Every builder takes the acting key explicitly (owner, authority, admin or
fee payer) and returns instructions only; signing and submission are the
caller's job. Multi-step intents read ledger state first so the returned
sequence only contains the steps still needed, with account creation
always ahead of first use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .constants import DEFAULT_PROGRAM_ID, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from .errors import MissingFieldError
from .layout import (
    POLICY_TYPE,
    STATUS,
    U16,
    U32,
    FixedBytesCodec,
    encode_args,
    instruction_discriminator,
)
from .pda import (
    PubkeyLike,
    get_associated_token_address,
    get_config_pda,
    get_gateway_pda,
    get_payment_policy_pda,
    get_payments_delegate_pda,
    get_user_payment_pda,
    to_pubkey,
)
from .reader import PolicyStateReader
from .rpc import LedgerRpcClient
from .state import (
    PaymentFrequency,
    PaymentStatus,
    PolicyType,
    Subscription,
    encode_gateway_name,
    encode_gateway_url,
    encode_memo,
    validate_fee_bps,
)
from .token import TokenAccountState, approve, create_associated_token_account

logger = logging.getLogger(__name__)

_MEMO = FixedBytesCodec(64)
_NAME = FixedBytesCodec(32)
_URL = FixedBytesCodec(64)


def _meta(key: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(key, is_signer=signer, is_writable=writable)


def needs_approval(
    token_account: Optional[TokenAccountState],
    expected_delegate: PubkeyLike,
    approval_amount: int,
) -> bool:
    """True unless the account already delegates exactly `approval_amount` to `expected_delegate`."""
    if token_account is None or token_account.delegate is None:
        return True
    if token_account.delegate != to_pubkey(expected_delegate, "delegate"):
        return True
    return token_account.delegated_amount != approval_amount


@dataclass
class SubscriptionPlan:
    """Instructions for a new subscription plus the addresses they create."""

    instructions: list[Instruction]
    user_payment: Pubkey
    policy_address: Pubkey
    policy_id: int


class InstructionComposer:
    """Builds instruction sequences; reads ledger state but never writes it."""

    needs_approval = staticmethod(needs_approval)

    def __init__(
        self,
        reader: PolicyStateReader,
        rpc: LedgerRpcClient,
        program_id: PubkeyLike = DEFAULT_PROGRAM_ID,
    ):
        self.reader = reader
        self.rpc = rpc
        self.program_id = to_pubkey(program_id, "program_id")

    def _instruction(self, name: str, accounts: list[AccountMeta], args: bytes = b"") -> Instruction:
        return Instruction(self.program_id, instruction_discriminator(name) + args, accounts)

    @property
    def config_address(self) -> Pubkey:
        return get_config_pda(self.program_id).address

    @property
    def payments_delegate(self) -> Pubkey:
        return get_payments_delegate_pda(self.program_id).address

    def _account_exists(self, address: Pubkey) -> bool:
        return self.rpc.get_account_info(address) is not None

    # ── Admin ─────────────────────────────────────────────────────

    def initialize(self, admin: PubkeyLike) -> Instruction:
        return self._instruction(
            "initialize",
            [
                _meta(to_pubkey(admin, "admin"), signer=True, writable=True),
                _meta(self.config_address, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def create_payment_gateway(
        self,
        admin: PubkeyLike,
        authority: PubkeyLike,
        fee_bps: int,
        fee_recipient: PubkeyLike,
        name: str,
        url: str,
    ) -> Instruction:
        authority_key = to_pubkey(authority, "authority")
        return self._instruction(
            "create_payment_gateway",
            [
                _meta(to_pubkey(admin, "admin"), signer=True, writable=True),
                _meta(authority_key),
                _meta(get_gateway_pda(authority_key, self.program_id).address, writable=True),
                _meta(self.config_address),
                _meta(to_pubkey(fee_recipient, "fee_recipient")),
                _meta(SYSTEM_PROGRAM_ID),
            ],
            encode_args(
                (U16, validate_fee_bps(fee_bps)),
                (_NAME, encode_gateway_name(name)),
                (_URL, encode_gateway_url(url)),
            ),
        )

    def delete_payment_gateway(self, admin: PubkeyLike, authority: PubkeyLike) -> Instruction:
        authority_key = to_pubkey(authority, "authority")
        return self._instruction(
            "delete_payment_gateway",
            [
                _meta(to_pubkey(admin, "admin"), signer=True, writable=True),
                _meta(authority_key),
                _meta(get_gateway_pda(authority_key, self.program_id).address, writable=True),
                _meta(self.config_address),
            ],
        )

    # ── Gateway authority ─────────────────────────────────────────

    def change_gateway_signer(self, authority: PubkeyLike, new_signer: PubkeyLike) -> Instruction:
        authority_key = to_pubkey(authority, "authority")
        return self._instruction(
            "change_gateway_signer",
            [
                _meta(authority_key, signer=True, writable=True),
                _meta(get_gateway_pda(authority_key, self.program_id).address, writable=True),
                _meta(to_pubkey(new_signer, "new_signer")),
            ],
        )

    def change_gateway_fee_recipient(
        self,
        authority: PubkeyLike,
        new_fee_recipient: PubkeyLike,
    ) -> Instruction:
        authority_key = to_pubkey(authority, "authority")
        return self._instruction(
            "change_gateway_fee_recipient",
            [
                _meta(authority_key, signer=True, writable=True),
                _meta(get_gateway_pda(authority_key, self.program_id).address, writable=True),
                _meta(to_pubkey(new_fee_recipient, "new_fee_recipient")),
            ],
        )

    # ── Owner ─────────────────────────────────────────────────────

    def create_user_payment(self, owner: PubkeyLike, token_mint: PubkeyLike) -> Instruction:
        owner_key = to_pubkey(owner, "owner")
        mint_key = to_pubkey(token_mint, "token_mint")
        return self._instruction(
            "create_user_payment",
            [
                _meta(owner_key, signer=True, writable=True),
                _meta(get_user_payment_pda(owner_key, mint_key, self.program_id).address, writable=True),
                _meta(get_associated_token_address(owner_key, mint_key)),
                _meta(mint_key),
                _meta(self.config_address),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )

    def create_payment_policy(
        self,
        owner: PubkeyLike,
        token_mint: PubkeyLike,
        recipient: PubkeyLike,
        gateway: PubkeyLike,
        policy_id: int,
        policy_type: PolicyType,
        memo: Union[str, bytes] = "",
    ) -> Instruction:
        owner_key = to_pubkey(owner, "owner")
        mint_key = to_pubkey(token_mint, "token_mint")
        user_payment = get_user_payment_pda(owner_key, mint_key, self.program_id).address
        policy_type.validate()
        memo_bytes = encode_memo(memo) if isinstance(memo, str) else bytes(memo)
        return self._instruction(
            "create_payment_policy",
            [
                _meta(owner_key, signer=True, writable=True),
                _meta(user_payment, writable=True),
                _meta(to_pubkey(recipient, "recipient")),
                _meta(mint_key),
                _meta(to_pubkey(gateway, "gateway")),
                _meta(self.config_address),
                _meta(get_payment_policy_pda(user_payment, policy_id, self.program_id).address, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
            encode_args((U32, policy_id), (POLICY_TYPE, policy_type), (_MEMO, memo_bytes)),
        )

    def change_payment_policy_status(
        self,
        owner: PubkeyLike,
        token_mint: PubkeyLike,
        policy_id: int,
        new_status: PaymentStatus,
    ) -> Instruction:
        owner_key = to_pubkey(owner, "owner")
        mint_key = to_pubkey(token_mint, "token_mint")
        user_payment = get_user_payment_pda(owner_key, mint_key, self.program_id).address
        return self._instruction(
            "change_payment_policy_status",
            [
                _meta(owner_key, signer=True, writable=True),
                _meta(user_payment),
                _meta(mint_key),
                _meta(get_payment_policy_pda(user_payment, policy_id, self.program_id).address, writable=True),
            ],
            encode_args((U32, policy_id), (STATUS, PaymentStatus(new_status))),
        )

    def delete_payment_policy(self, owner: PubkeyLike, token_mint: PubkeyLike, policy_id: int) -> Instruction:
        owner_key = to_pubkey(owner, "owner")
        mint_key = to_pubkey(token_mint, "token_mint")
        user_payment = get_user_payment_pda(owner_key, mint_key, self.program_id).address
        return self._instruction(
            "delete_payment_policy",
            [
                _meta(owner_key, signer=True, writable=True),
                _meta(user_payment, writable=True),
                _meta(mint_key),
                _meta(get_payment_policy_pda(user_payment, policy_id, self.program_id).address, writable=True),
            ],
            encode_args((U32, policy_id)),
        )

    # ── Multi-step intents ────────────────────────────────────────

    def plan_subscription(
        self,
        owner: PubkeyLike,
        token_mint: PubkeyLike,
        recipient: PubkeyLike,
        gateway: PubkeyLike,
        amount: int,
        auto_renew: bool,
        max_renewals: Optional[int],
        payment_frequency: Union[PaymentFrequency, str],
        memo: Union[str, bytes] = "",
        start_time: Optional[int] = None,
        approval_amount: Optional[int] = None,
        execute_immediately: bool = False,
    ) -> SubscriptionPlan:
        owner_key = to_pubkey(owner, "owner")
        mint_key = to_pubkey(token_mint, "token_mint")
        if isinstance(payment_frequency, str):
            payment_frequency = PaymentFrequency.from_string(payment_frequency)

        instructions: list[Instruction] = []

        owner_token_account = get_associated_token_address(owner_key, mint_key)
        token_state = self.rpc.get_token_account(owner_token_account)
        if token_state is None:
            instructions.append(create_associated_token_account(owner_key, owner_key, mint_key))

        user_payment = get_user_payment_pda(owner_key, mint_key, self.program_id).address
        existing = self.reader.fetch_user_payment(user_payment)
        if existing is None:
            instructions.append(self.create_user_payment(owner_key, mint_key))
            policy_id = 1
        else:
            policy_id = existing.active_policies_count + 1

        subscription = Subscription(
            amount=amount,
            auto_renew=auto_renew,
            max_renewals=max_renewals,
            payment_frequency=payment_frequency,
            next_payment_due=int(time.time()) if start_time is None else start_time,
        )
        instructions.append(
            self.create_payment_policy(
                owner_key, mint_key, recipient, gateway, policy_id, subscription, memo
            )
        )
        policy_address = get_payment_policy_pda(user_payment, policy_id, self.program_id).address

        if approval_amount is not None:
            delegate = self.payments_delegate
            if needs_approval(token_state, delegate, approval_amount):
                instructions.append(approve(owner_token_account, delegate, owner_key, approval_amount))
            else:
                logger.debug("Delegation already in place for %s", owner_token_account)

        if execute_immediately:
            instructions.extend(
                self.execute_payment(
                    policy_address,
                    fee_payer=owner_key,
                    recipient=recipient,
                    token_mint=mint_key,
                    gateway=gateway,
                    owner=owner_key,
                    pending_accounts=[owner_token_account] if token_state is None else [],
                )
            )

        logger.debug(
            "Composed %d instruction(s) for policy %s (id %d)",
            len(instructions),
            policy_address,
            policy_id,
        )
        return SubscriptionPlan(
            instructions=instructions,
            user_payment=user_payment,
            policy_address=policy_address,
            policy_id=policy_id,
        )

    def create_subscription(self, owner: PubkeyLike, token_mint: PubkeyLike, *args, **kwargs) -> list[Instruction]:
        """Ordered instructions creating a subscription policy; see `plan_subscription`."""
        return self.plan_subscription(owner, token_mint, *args, **kwargs).instructions

    def execute_payment(
        self,
        policy_address: PubkeyLike,
        fee_payer: PubkeyLike,
        recipient: Optional[PubkeyLike] = None,
        token_mint: Optional[PubkeyLike] = None,
        gateway: Optional[PubkeyLike] = None,
        owner: Optional[PubkeyLike] = None,
        pending_accounts: Iterable[Pubkey] = (),
    ) -> list[Instruction]:
        """Instructions charging one period of a policy.

        Fields recorded on the policy and its UserPayment win over the
        caller's fallbacks. Due date, status and delegation are enforced by
        the program at submission time, not here. Token accounts listed in
        `pending_accounts` are created earlier in the same transaction.
        """
        policy_key = to_pubkey(policy_address, "policy_address")
        fee_payer_key = to_pubkey(fee_payer, "fee_payer")

        resolved = {
            "recipient": None,
            "token_mint": None,
            "gateway": None,
            "owner": None,
        }
        policy = self.reader.fetch_policy(policy_key)
        if policy is not None:
            resolved["recipient"] = policy.recipient
            resolved["gateway"] = policy.gateway
            user_payment_record = self.reader.fetch_user_payment(policy.user_payment)
            if user_payment_record is not None:
                resolved["token_mint"] = user_payment_record.token_mint
                resolved["owner"] = user_payment_record.owner

        fallbacks = {"recipient": recipient, "token_mint": token_mint, "gateway": gateway, "owner": owner}
        for name in ("token_mint", "recipient", "gateway", "owner"):
            if resolved[name] is None and fallbacks[name] is not None:
                resolved[name] = to_pubkey(fallbacks[name], name)
            if resolved[name] is None:
                raise MissingFieldError(name)

        mint_key = resolved["token_mint"]
        owner_key = resolved["owner"]
        gateway_key = resolved["gateway"]
        recipient_key = resolved["recipient"]

        gateway_record = self.reader.fetch_gateway(gateway_key)
        if gateway_record is None:
            raise MissingFieldError("gateway", f"Payment gateway {gateway_key} not found")
        config_record = self.reader.fetch_program_config()
        if config_record is None:
            raise MissingFieldError("config", "Program config account not found")

        instructions: list[Instruction] = []
        pending = set(pending_accounts)
        destinations = []
        for destination_owner in (recipient_key, gateway_record.fee_recipient, config_record.fee_recipient):
            ata = get_associated_token_address(destination_owner, mint_key)
            destinations.append(ata)
            if ata in destinations[:-1] or ata in pending:
                continue
            if not self._account_exists(ata):
                instructions.append(
                    create_associated_token_account(fee_payer_key, destination_owner, mint_key)
                )
        recipient_ata, gateway_fee_ata, protocol_fee_ata = destinations

        instructions.append(
            self._instruction(
                "execute_payment",
                [
                    _meta(fee_payer_key, signer=True),
                    _meta(self.payments_delegate),
                    _meta(policy_key, writable=True),
                    _meta(get_user_payment_pda(owner_key, mint_key, self.program_id).address, writable=True),
                    _meta(gateway_key, writable=True),
                    _meta(self.config_address),
                    _meta(get_associated_token_address(owner_key, mint_key), writable=True),
                    _meta(recipient_ata, writable=True),
                    _meta(gateway_fee_ata, writable=True),
                    _meta(protocol_fee_ata, writable=True),
                    _meta(TOKEN_PROGRAM_ID),
                ],
            )
        )
        return instructions
