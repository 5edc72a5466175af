"""
Tributary CLI: recurring-payment policies from the command line.

Commands:
    tributary keygen                  Write a new keypair file
    tributary initialize              Create the program config (admin)
    tributary create-gateway          Register a payment gateway (admin)
    tributary create-subscription     Create a subscription policy
    tributary execute-payment         Charge one period of a policy
    tributary pause-policy / resume-policy / delete-policy
    tributary list-gateways / list-policies / show-policy
    tributary subscribe               Pay for a deferred-payment resource
    tributary pda                     Derive a program address
    tributary audit                   View the audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import click
from solders.instruction import Instruction
from solders.keypair import Keypair

from . import __version__
from .audit import AuditTrail
from .composer import InstructionComposer
from .config import RPC_URL_ENV, load_rpc_config
from .constants import DEFAULT_PROGRAM_ID
from .errors import TributaryError
from .money import format_amount
from .payer import DeferredPaymentClient
from .pda import derive, get_gateway_pda, to_pubkey
from .reader import PolicyStateReader
from .rpc import LedgerRpcClient
from .state import PaymentFrequency, PaymentStatus, calculate_next_payment_due
from .storage import DEFAULT_KEYPAIR_PATH, read_keypair, write_keypair


# ── Context ───────────────────────────────────────────────────────


@dataclass
class CliContext:
    rpc_url: Optional[str] = None
    keypair_path: Path = DEFAULT_KEYPAIR_PATH
    program_id: str = str(DEFAULT_PROGRAM_ID)
    rpc: Optional[LedgerRpcClient] = None
    signer: Optional[Keypair] = None

    def client(self) -> LedgerRpcClient:
        if self.rpc is None:
            config = load_rpc_config()
            if self.rpc_url:
                config.url = self.rpc_url
            self.rpc = LedgerRpcClient(config)
        return self.rpc

    def keypair(self) -> Keypair:
        if self.signer is None:
            self.signer = read_keypair(self.keypair_path)
        return self.signer

    def reader(self) -> PolicyStateReader:
        return PolicyStateReader(self.client(), self.program_id)

    def composer(self) -> InstructionComposer:
        return InstructionComposer(self.reader(), self.client(), self.program_id)


pass_cli = click.make_pass_decorator(CliContext)


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _submit(
    cli: CliContext,
    label: str,
    build: Callable[[Keypair, InstructionComposer], list[Instruction]],
) -> Optional[str]:
    """Build instructions for the local keypair, then sign, send and confirm them."""
    try:
        keypair = cli.keypair()
        instructions = build(keypair, cli.composer())
        signature = cli.client().send_and_confirm(instructions, [keypair])
    except (TributaryError, ValueError, OSError) as e:
        _fail(f"{label} failed: {e}")
        return None
    click.echo(f"✅ {label}")
    click.echo(f"   Signature: {signature}")
    return signature


# ── CLI ───────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option("--rpc-url", default=None, help=f"Ledger RPC endpoint (default: ${RPC_URL_ENV} or devnet)")
@click.option(
    "--keypair",
    "keypair_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_KEYPAIR_PATH,
    show_default=True,
    help="Keypair file (JSON array of 64 bytes) used to sign",
)
@click.option("--program-id", default=str(DEFAULT_PROGRAM_ID), show_default=True, help="Program id")
@click.option("-v", "--verbose", is_flag=True, help="Log RPC activity")
@click.pass_context
def main(ctx, rpc_url: Optional[str], keypair_path: Path, program_id: str, verbose: bool):
    """Tributary: recurring on-ledger payments and deferred-payment access."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if ctx.obj is None:
        ctx.obj = CliContext(rpc_url=rpc_url, keypair_path=keypair_path, program_id=program_id)


@main.command()
@click.option("--out", "out_path", type=click.Path(path_type=Path), required=True, help="Where to write the keypair")
def keygen(out_path: Path):
    """Generate a keypair file readable only by you."""
    keypair = Keypair()
    try:
        write_keypair(out_path, keypair)
    except (FileExistsError, OSError) as e:
        _fail(str(e))
    click.echo(f"✅ Keypair written to {out_path}")
    click.echo(f"   Public key: {keypair.pubkey()}")


@main.command()
@click.argument("namespace", type=click.Choice(["config", "gateway", "user_payment", "payment_policy", "payments"]))
@click.argument("keys", nargs=-1)
@pass_cli
def pda(cli: CliContext, namespace: str, keys: tuple[str, ...]):
    """Derive a program address, e.g. `pda payment_policy <user_payment> 1`."""
    parts: list = list(keys)
    try:
        if namespace == "payment_policy" and len(parts) == 2:
            parts[1] = int(parts[1])
        result = derive(namespace, *parts, program_id=cli.program_id)
    except ValueError as e:
        _fail(str(e))
        return
    click.echo(f"{result.address} (bump {result.bump})")


# ── Admin ─────────────────────────────────────────────────────────


@main.command()
@pass_cli
def initialize(cli: CliContext):
    """Create the program config with the local keypair as admin."""
    _submit(cli, "Program initialized", lambda kp, c: [c.initialize(kp.pubkey())])


@main.command("create-gateway")
@click.option("--authority", required=True, help="Gateway authority public key")
@click.option("--fee-bps", type=int, required=True, help="Gateway fee in basis points (0-10000)")
@click.option("--fee-recipient", required=True, help="Gateway fee recipient public key")
@click.option("--name", required=True, help="Gateway name (max 32 bytes)")
@click.option("--url", "gateway_url", default="", help="Gateway URL (max 64 bytes)")
@pass_cli
def create_gateway(cli: CliContext, authority: str, fee_bps: int, fee_recipient: str, name: str, gateway_url: str):
    """Register a payment gateway (admin only)."""
    signature = _submit(
        cli,
        "Gateway created",
        lambda kp, c: [c.create_payment_gateway(kp.pubkey(), authority, fee_bps, fee_recipient, name, gateway_url)],
    )
    if signature:
        click.echo(f"   Gateway:   {get_gateway_pda(authority, cli.program_id).address}")


@main.command("delete-gateway")
@click.option("--authority", required=True, help="Gateway authority public key")
@pass_cli
def delete_gateway(cli: CliContext, authority: str):
    """Remove a payment gateway (admin only)."""
    _submit(cli, "Gateway deleted", lambda kp, c: [c.delete_payment_gateway(kp.pubkey(), authority)])


@main.command("change-gateway-signer")
@click.argument("new_signer")
@pass_cli
def change_gateway_signer(cli: CliContext, new_signer: str):
    """Set the key allowed to trigger payments for your gateway."""
    _submit(cli, "Gateway signer changed", lambda kp, c: [c.change_gateway_signer(kp.pubkey(), new_signer)])


@main.command("change-gateway-fee-recipient")
@click.argument("new_fee_recipient")
@pass_cli
def change_gateway_fee_recipient(cli: CliContext, new_fee_recipient: str):
    """Set where your gateway's fees are paid."""
    _submit(
        cli,
        "Gateway fee recipient changed",
        lambda kp, c: [c.change_gateway_fee_recipient(kp.pubkey(), new_fee_recipient)],
    )


# ── Policies ──────────────────────────────────────────────────────


@main.command("create-user-payment")
@click.option("--token-mint", required=True, help="Token mint public key")
@pass_cli
def create_user_payment(cli: CliContext, token_mint: str):
    """Create your payment account for a token."""
    _submit(cli, "User payment created", lambda kp, c: [c.create_user_payment(kp.pubkey(), token_mint)])


@main.command("create-subscription")
@click.option("--token-mint", required=True, help="Token mint public key")
@click.option("--recipient", required=True, help="Recipient wallet")
@click.option("--gateway", required=True, help="Gateway account address")
@click.option("--amount", type=int, required=True, help="Amount per period in base units")
@click.option("--frequency", default="monthly", show_default=True, help="daily, weekly, monthly, quarterly, semiAnnually, annually or custom")
@click.option("--custom-seconds", type=int, default=None, help="Interval for --frequency custom")
@click.option("--auto-renew", is_flag=True, help="Renew automatically")
@click.option("--max-renewals", type=int, default=None, help="Stop after this many renewals")
@click.option("--memo", default="", help="Memo stored on the policy (max 64 bytes)")
@click.option("--start-time", type=int, default=None, help="First due date (unix seconds, default: now)")
@click.option("--approve-amount", type=int, default=None, help="Delegate this many base units to the program")
@click.option("--execute-now", is_flag=True, help="Charge the first period in the same transaction")
@pass_cli
def create_subscription(
    cli: CliContext,
    token_mint: str,
    recipient: str,
    gateway: str,
    amount: int,
    frequency: str,
    custom_seconds: Optional[int],
    auto_renew: bool,
    max_renewals: Optional[int],
    memo: str,
    start_time: Optional[int],
    approve_amount: Optional[int],
    execute_now: bool,
):
    """Create a subscription policy paying RECIPIENT through GATEWAY."""
    try:
        payment_frequency = PaymentFrequency.from_string(frequency, custom_seconds)
    except ValueError as e:
        _fail(str(e))
        return

    _submit(
        cli,
        f"Subscription created: {format_amount(amount)} {payment_frequency}",
        lambda kp, c: c.create_subscription(
            kp.pubkey(),
            token_mint,
            recipient,
            gateway,
            amount,
            auto_renew,
            max_renewals,
            payment_frequency,
            memo=memo,
            start_time=start_time,
            approval_amount=approve_amount,
            execute_immediately=execute_now,
        ),
    )


@main.command("execute-payment")
@click.argument("policy_address")
@click.option("--recipient", default=None, help="Fallback recipient when the policy cannot be read")
@click.option("--token-mint", default=None, help="Fallback token mint")
@click.option("--gateway", default=None, help="Fallback gateway")
@click.option("--owner", default=None, help="Fallback policy owner")
@pass_cli
def execute_payment(
    cli: CliContext,
    policy_address: str,
    recipient: Optional[str],
    token_mint: Optional[str],
    gateway: Optional[str],
    owner: Optional[str],
):
    """Charge one period of POLICY_ADDRESS, paying fees from the local keypair."""
    _submit(
        cli,
        "Payment executed",
        lambda kp, c: c.execute_payment(
            policy_address,
            kp.pubkey(),
            recipient=recipient,
            token_mint=token_mint,
            gateway=gateway,
            owner=owner,
        ),
    )


def _status_command(name: str, status: PaymentStatus, label: str):
    @main.command(name, help=f"Mark one of your policies {status.value}.")
    @click.argument("policy_id", type=int)
    @click.option("--token-mint", required=True, help="Token mint of the policy")
    @pass_cli
    def command(cli: CliContext, policy_id: int, token_mint: str):
        _submit(
            cli,
            f"Policy {policy_id} {label}",
            lambda kp, c: [c.change_payment_policy_status(kp.pubkey(), token_mint, policy_id, status)],
        )
    return command


pause_policy = _status_command("pause-policy", PaymentStatus.PAUSED, "paused")
resume_policy = _status_command("resume-policy", PaymentStatus.ACTIVE, "resumed")


@main.command("delete-policy")
@click.argument("policy_id", type=int)
@click.option("--token-mint", required=True, help="Token mint of the policy")
@pass_cli
def delete_policy(cli: CliContext, policy_id: int, token_mint: str):
    """Delete one of your policies."""
    _submit(
        cli,
        f"Policy {policy_id} deleted",
        lambda kp, c: [c.delete_payment_policy(kp.pubkey(), token_mint, policy_id)],
    )


# ── Queries ───────────────────────────────────────────────────────


@main.command("list-gateways")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@pass_cli
def list_gateways(cli: CliContext, as_json: bool):
    """List registered payment gateways."""
    try:
        gateways = cli.reader().list_gateways()
    except TributaryError as e:
        _fail(str(e))
        return
    if as_json:
        click.echo(json.dumps({str(g.address): g.account.to_dict() for g in gateways}, indent=2))
        return
    if not gateways:
        click.echo("No gateways found.")
        return
    for g in gateways:
        state = "active" if g.account.is_active else "inactive"
        click.echo(f"  {g.address}  {g.account.name_text or '-'}  {g.account.gateway_fee_bps} bps  {state}")


@main.command("list-policies")
@click.option("--user-payment", default=None, help="Only policies of this UserPayment account")
@click.option("--recipient", default=None, help="Only policies paying this recipient")
@click.option("--gateway", default=None, help="Only policies through this gateway")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@pass_cli
def list_policies(
    cli: CliContext,
    user_payment: Optional[str],
    recipient: Optional[str],
    gateway: Optional[str],
    as_json: bool,
):
    """List payment policies, optionally filtered by one indexed field."""
    if sum(v is not None for v in (user_payment, recipient, gateway)) > 1:
        _fail("Use at most one of --user-payment, --recipient, --gateway")
        return
    reader = cli.reader()
    try:
        if user_payment:
            policies = reader.list_policies_by_user(user_payment)
        elif recipient:
            policies = reader.list_policies_by_recipient(recipient)
        elif gateway:
            policies = reader.list_policies_by_gateway(gateway)
        else:
            policies = reader.list_policies()
    except TributaryError as e:
        _fail(str(e))
        return

    if as_json:
        click.echo(json.dumps({str(p.address): p.account.to_dict() for p in policies}, indent=2))
        return
    if not policies:
        click.echo("No payment policies found.")
        return
    for p in policies:
        policy = p.account
        status = "✅" if policy.is_active else "⏸️"
        click.echo(
            f"  {status} {p.address}  #{policy.policy_id}  {format_amount(policy.amount)}  "
            f"{policy.policy_type.payment_frequency}  paid {policy.payment_count}x"
        )


@main.command("show-policy")
@click.argument("policy_address")
@pass_cli
def show_policy(cli: CliContext, policy_address: str):
    """Show one payment policy."""
    try:
        policy = cli.reader().fetch_policy(to_pubkey(policy_address, "policy_address"))
    except TributaryError as e:
        _fail(str(e))
        return
    if policy is None:
        _fail(f"Policy not found: {policy_address}")
        return

    now = int(time.time())
    sub = policy.policy_type
    upcoming = calculate_next_payment_due(sub.next_payment_due, sub.payment_frequency, now)
    click.echo(f"📄 Policy {policy_address}")
    click.echo(f"   ID:         {policy.policy_id}")
    click.echo(f"   Status:     {policy.status.value}")
    click.echo(f"   Amount:     {format_amount(policy.amount)}")
    click.echo(f"   Frequency:  {sub.payment_frequency}")
    click.echo(f"   Recipient:  {policy.recipient}")
    click.echo(f"   Gateway:    {policy.gateway}")
    click.echo(f"   Paid:       {format_amount(policy.total_paid)} over {policy.payment_count} payment(s)")
    click.echo(f"   Due now:    {'yes' if policy.is_due(now) else 'no'}")
    click.echo(f"   Next due:   {time.strftime('%Y-%m-%d %H:%M', time.gmtime(sub.next_payment_due))} UTC")
    if upcoming != sub.next_payment_due:
        click.echo(f"   Following:  {time.strftime('%Y-%m-%d %H:%M', time.gmtime(upcoming))} UTC")
    if policy.memo_text:
        click.echo(f"   Memo:       {policy.memo_text}")


# ── Deferred payments ─────────────────────────────────────────────


@main.command()
@click.argument("url")
@click.option("--max-amount", type=int, default=None, help="Refuse offers above this many base units")
@click.option("--memo", default="x402 subscription", show_default=True, help="Memo stored on the policy")
@pass_cli
def subscribe(cli: CliContext, url: str, max_amount: Optional[int], memo: str):
    """Subscribe to a deferred-payment resource and print the access credential."""
    try:
        client = DeferredPaymentClient(
            cli.client(), cli.composer(), cli.keypair(), memo=memo, max_amount=max_amount
        )
        with client:
            receipt = client.subscribe(url)
    except (TributaryError, ValueError, OSError) as e:
        _fail(f"Subscription failed: {e}")
        return
    click.echo(f"✅ {receipt.message or 'Subscription active'}")
    click.echo(f"   Policy:    {receipt.policy_address}")
    if receipt.signature:
        click.echo(f"   Signature: {receipt.signature}")
    if receipt.explorer_url:
        click.echo(f"   Explorer:  {receipt.explorer_url}")
    click.echo(f"   JWT:       {receipt.jwt}")


@main.command()
@click.option("--subscription-id", default=None, help="Filter by subscription id")
@click.option("--path", "audit_path", type=click.Path(path_type=Path), default=None, help="Audit log file")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(subscription_id: Optional[str], audit_path: Optional[Path], limit: int):
    """View the audit trail."""
    trail = AuditTrail(audit_path)
    try:
        events = trail.read_events(subscription_id=subscription_id, limit=limit)
    except RuntimeError as e:
        _fail(str(e))
        return

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_amount(event.amount)}" if event.amount else ""
        who = f" ← {event.payer}" if event.payer else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{who}{reason}")


if __name__ == "__main__":
    main()
