"""Tests for policy verification against a gateway's terms."""

import httpx
import pytest
from solders.keypair import Keypair

from tributary.config import RpcConfig
from tributary.reader import PolicyStateReader
from tributary.rpc import LedgerRpcClient
from tributary.state import PaymentStatus
from tributary.verifier import PaymentVerifier


@pytest.fixture
def verifier(ledger):
    return PaymentVerifier(PolicyStateReader(ledger))


def _verify(verifier, scenario, amount=100, **overrides):
    terms = {
        "expected_token_mint": scenario.token_mint,
        "expected_gateway": scenario.gateway,
        "expected_recipient": scenario.recipient,
    }
    terms.update(overrides)
    return verifier.verify(scenario.payer.pubkey(), amount, **terms)


class TestVerify:
    def test_no_policies(self, verifier, scenario):
        result = _verify(verifier, scenario)
        assert not result.success
        assert result.reason == "No payment policies found for user"
        assert result.field == "policy"

    def test_matching_policy(self, verifier, scenario):
        scenario.install_user_payment()
        address = scenario.install_policy(1)
        result = _verify(verifier, scenario)
        assert result.success
        assert result.policy_address == address

    def test_newest_policy_wins(self, verifier, scenario):
        scenario.install_user_payment()
        scenario.install_policy(1, created_at=1_000, status=PaymentStatus.PAUSED)
        newest = scenario.install_policy(2, created_at=2_000)
        assert _verify(verifier, scenario).policy_address == newest

        scenario.install_policy(3, created_at=3_000, status=PaymentStatus.PAUSED)
        result = _verify(verifier, scenario)
        assert not result.success
        assert result.field == "status"

    @pytest.mark.parametrize(
        "field,kwargs",
        [
            ("amount", {"amount": 101}),
            ("gateway", {"expected_gateway": Keypair().pubkey()}),
            ("recipient", {"expected_recipient": Keypair().pubkey()}),
        ],
    )
    def test_term_mismatch(self, verifier, scenario, field, kwargs):
        scenario.install_user_payment()
        scenario.install_policy(1)
        result = _verify(verifier, scenario, **kwargs)
        assert not result.success
        assert result.field == field

    def test_token_mint_taken_from_parent_account(self, verifier, scenario):
        # policy exists under the payer's PDA but its UserPayment record is missing
        scenario.install_policy(1)
        result = _verify(verifier, scenario)
        assert result.field == "token_mint"

    def test_malformed_payer_is_reported_not_raised(self, verifier, scenario):
        result = verifier.verify("bogus", 100, scenario.token_mint, scenario.gateway, scenario.recipient)
        assert not result.success
        assert result.reason.startswith("Verification error:")

    def test_verification_is_read_only(self, verifier, ledger, scenario):
        scenario.install_user_payment()
        scenario.install_policy(1)
        before = dict(ledger.accounts)
        assert _verify(verifier, scenario) == _verify(verifier, scenario)
        assert ledger.accounts == before
        assert "sendTransaction" not in ledger.calls


class TestCheckPolicyActive:
    def test_active(self, verifier, scenario):
        address = scenario.install_policy(1)
        assert verifier.check_policy_active(str(address)).success

    def test_paused(self, verifier, scenario):
        address = scenario.install_policy(1, status=PaymentStatus.PAUSED)
        result = verifier.check_policy_active(address)
        assert result.field == "status"
        assert "paused" in result.reason

    def test_missing(self, verifier):
        result = verifier.check_policy_active(Keypair().pubkey())
        assert result.reason == "Policy not found"

    def test_to_dict(self, verifier, scenario):
        address = scenario.install_policy(1)
        assert verifier.check_policy_active(address).to_dict() == {
            "success": True,
            "reason": None,
            "field": None,
            "policy_address": str(address),
        }


class TestTransportFailures:
    @pytest.fixture
    def dropped_verifier(self):
        def handler(request):
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.")

        rpc = LedgerRpcClient(
            RpcConfig(url="http://rpc.test", max_retries=1, retry_delay=0),
            http=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        return PaymentVerifier(PolicyStateReader(rpc))

    def test_verify_reports_dropped_connection(self, dropped_verifier, scenario):
        result = _verify(dropped_verifier, scenario)
        assert not result.success
        assert "Server disconnected" in result.reason

    def test_check_policy_active_reports_dropped_connection(self, dropped_verifier):
        result = dropped_verifier.check_policy_active(Keypair().pubkey())
        assert not result.success
        assert result.reason.startswith("Verification error:")
