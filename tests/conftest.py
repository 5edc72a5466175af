"""Shared fixtures: an in-memory ledger and record builders."""

import time
from typing import Callable, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from tributary.config import RpcConfig
from tributary.constants import DEFAULT_PROGRAM_ID, TOKEN_PROGRAM_ID
from tributary.errors import SubmissionError
from tributary.layout import PAYMENT_GATEWAY, PAYMENT_POLICY, PROGRAM_CONFIG, USER_PAYMENT
from tributary.pda import (
    get_associated_token_address,
    get_config_pda,
    get_gateway_pda,
    get_payment_policy_pda,
    get_user_payment_pda,
)
from tributary.rpc import AccountInfo, LatestBlockhash, SimulationResult
from tributary.state import (
    FrequencyKind,
    PaymentFrequency,
    PaymentGateway,
    PaymentPolicy,
    PaymentStatus,
    ProgramConfig,
    Subscription,
    UserPayment,
    encode_gateway_name,
    encode_gateway_url,
    encode_memo,
)
from tributary.token import TokenAccountState


class FakeLedger:
    """Stands in for LedgerRpcClient: accounts in a dict, scripted submission results."""

    def __init__(self):
        self.config = RpcConfig(url="http://ledger.invalid", max_retries=0)
        self.accounts: dict[Pubkey, AccountInfo] = {}
        self.simulation_err = None
        self.simulation_logs: list[str] = []
        self.confirm_error = None
        self.on_submit: Optional[Callable[[bytes], None]] = None
        self.simulated: list[bytes] = []
        self.submitted: list[bytes] = []
        self.calls: list[str] = []

    # ── state setup ──

    def put(self, address: Pubkey, data: bytes, owner: Pubkey = DEFAULT_PROGRAM_ID) -> None:
        self.accounts[address] = AccountInfo(data=data, owner=owner, lamports=1_000_000)

    def put_token_account(self, address: Pubkey, state: TokenAccountState) -> None:
        self.put(address, state.to_bytes(), owner=TOKEN_PROGRAM_ID)

    # ── LedgerRpcClient surface ──

    def get_account_info(self, address):
        self.calls.append("getAccountInfo")
        return self.accounts.get(Pubkey.from_string(str(address)))

    def get_program_accounts(self, program_id, data_size=None, memcmp=()):
        self.calls.append("getProgramAccounts")
        program = Pubkey.from_string(str(program_id))
        results = []
        for address, info in self.accounts.items():
            if info.owner != program:
                continue
            if data_size is not None and len(info.data) != data_size:
                continue
            if any(info.data[offset:offset + len(value)] != value for offset, value in memcmp):
                continue
            results.append((address, info))
        return results

    def get_token_account(self, address):
        info = self.get_account_info(address)
        return TokenAccountState.from_bytes(info.data) if info else None

    def get_latest_blockhash(self):
        return LatestBlockhash(blockhash=Hash.default(), last_valid_block_height=100)

    def simulate_transaction(self, raw):
        self.calls.append("simulateTransaction")
        self.simulated.append(raw)
        return SimulationResult(err=self.simulation_err, logs=list(self.simulation_logs))

    def send_raw_transaction(self, raw):
        self.calls.append("sendTransaction")
        self.submitted.append(raw)
        if self.on_submit is not None:
            self.on_submit(raw)
        return str(Transaction.from_bytes(raw).signatures[0])

    def confirm_transaction(self, signature):
        self.calls.append("getSignatureStatuses")
        if self.confirm_error is not None:
            raise SubmissionError(f"Transaction {signature} failed on-ledger", details=self.confirm_error)

    def sign_transaction(self, instructions, signers):
        return Transaction.new_signed_with_payer(
            list(instructions), signers[0].pubkey(), list(signers), Hash.default()
        )

    def send_and_confirm(self, instructions, signers):
        signature = self.send_raw_transaction(bytes(self.sign_transaction(instructions, signers)))
        self.confirm_transaction(signature)
        return signature


# ── Record builders ───────────────────────────────────────────────


def make_subscription(amount=100, frequency=None, next_due=None, **kwargs) -> Subscription:
    return Subscription(
        amount=amount,
        auto_renew=kwargs.pop("auto_renew", False),
        max_renewals=kwargs.pop("max_renewals", None),
        payment_frequency=frequency or PaymentFrequency(FrequencyKind.MONTHLY),
        next_payment_due=int(time.time()) if next_due is None else next_due,
    )


def make_policy(user_payment, recipient, gateway, policy_id=1, **kwargs) -> PaymentPolicy:
    now = int(time.time())
    return PaymentPolicy(
        user_payment=user_payment,
        recipient=recipient,
        gateway=gateway,
        policy_type=kwargs.pop("policy_type", None) or make_subscription(amount=kwargs.pop("amount", 100)),
        status=kwargs.pop("status", PaymentStatus.ACTIVE),
        memo=encode_memo(kwargs.pop("memo", "")),
        total_paid=kwargs.pop("total_paid", 0),
        payment_count=kwargs.pop("payment_count", 0),
        created_at=kwargs.pop("created_at", now),
        updated_at=kwargs.pop("updated_at", now),
        policy_id=policy_id,
        bump=kwargs.pop("bump", 255),
    )


def make_user_payment(owner, token_mint, active_policies_count=0) -> UserPayment:
    now = int(time.time())
    return UserPayment(
        owner=owner,
        token_account=get_associated_token_address(owner, token_mint),
        token_mint=token_mint,
        active_policies_count=active_policies_count,
        created_at=now,
        updated_at=now,
        is_active=True,
        bump=254,
    )


def make_gateway(authority, fee_recipient, name="Test gateway") -> PaymentGateway:
    return PaymentGateway(
        authority=authority,
        fee_recipient=fee_recipient,
        gateway_fee_bps=100,
        is_active=True,
        total_processed=0,
        created_at=int(time.time()),
        bump=253,
        name=encode_gateway_name(name),
        url=encode_gateway_url("https://gateway.example"),
        signer=authority,
    )


def make_config(admin, fee_recipient) -> ProgramConfig:
    return ProgramConfig(
        admin=admin,
        fee_recipient=fee_recipient,
        protocol_fee_bps=50,
        max_policies_per_user=10,
        emergency_pause=False,
        bump=252,
    )


class Scenario:
    """A payer, a gateway and a recipient on one token, with helpers to install accounts."""

    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self.payer = Keypair()
        self.authority = Keypair()
        self.token_mint = Keypair().pubkey()
        self.recipient = Keypair().pubkey()
        self.gateway_fee_recipient = Keypair().pubkey()
        self.protocol_fee_recipient = Keypair().pubkey()
        self.admin = Keypair().pubkey()
        self.gateway = get_gateway_pda(self.authority.pubkey()).address
        self.user_payment = get_user_payment_pda(self.payer.pubkey(), self.token_mint).address

    def install_program(self) -> None:
        self.ledger.put(
            self.gateway,
            PAYMENT_GATEWAY.encode(make_gateway(self.authority.pubkey(), self.gateway_fee_recipient)),
        )
        self.ledger.put(
            get_config_pda().address,
            PROGRAM_CONFIG.encode(make_config(self.admin, self.protocol_fee_recipient)),
        )

    def install_user_payment(self, active_policies_count=0) -> None:
        self.ledger.put(
            self.user_payment,
            USER_PAYMENT.encode(
                make_user_payment(self.payer.pubkey(), self.token_mint, active_policies_count)
            ),
        )

    def install_policy(self, policy_id=1, **kwargs) -> Pubkey:
        address = get_payment_policy_pda(self.user_payment, policy_id).address
        kwargs.setdefault("recipient", self.recipient)
        kwargs.setdefault("gateway", self.gateway)
        recipient = kwargs.pop("recipient")
        gateway = kwargs.pop("gateway")
        self.ledger.put(
            address,
            PAYMENT_POLICY.encode(make_policy(self.user_payment, recipient, gateway, policy_id, **kwargs)),
        )
        return address

    def install_payer_token_account(self, amount=1_000_000, delegate=None, delegated_amount=0) -> Pubkey:
        address = get_associated_token_address(self.payer.pubkey(), self.token_mint)
        self.ledger.put_token_account(
            address,
            TokenAccountState(
                mint=self.token_mint,
                owner=self.payer.pubkey(),
                amount=amount,
                delegate=delegate,
                delegated_amount=delegated_amount,
            ),
        )
        return address


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def scenario(ledger):
    return Scenario(ledger)
