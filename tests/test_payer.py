"""Tests for the deferred-payment client, run against the real app."""

import pytest
from fastapi.testclient import TestClient
from solders.hash import Hash
from solders.transaction import Transaction

from tributary.composer import InstructionComposer
from tributary.config import DeferredConfig
from tributary.credentials import CredentialIssuer
from tributary.deferred import DeferredPaymentHandler
from tributary.errors import InsufficientBalanceError, PaymentProofError
from tributary.payer import DeferredOffer, DeferredPaymentClient, build_payment_proof, select_deferred_offer
from tributary.proof import PaymentProof
from tributary.reader import PolicyStateReader
from tributary.server import create_app
from tributary.state import FrequencyKind
from tributary.verifier import PaymentVerifier

SECRET = "payer-test-secret-with-enough-bytes"
URL = "http://testserver/premium"


@pytest.fixture
def app(ledger, scenario):
    scenario.install_program()
    config = DeferredConfig(
        amount=100,
        recipient=str(scenario.recipient),
        gateway=str(scenario.gateway),
        token_mint=str(scenario.token_mint),
        jwt_secret=SECRET,
    )
    handler = DeferredPaymentHandler(
        config=config,
        rpc=ledger,
        verifier=PaymentVerifier(PolicyStateReader(ledger)),
        credentials=CredentialIssuer.from_secret(SECRET),
    )
    return create_app(handler)


def _client(app, ledger, scenario, **kwargs) -> DeferredPaymentClient:
    reader = PolicyStateReader(ledger)
    return DeferredPaymentClient(
        ledger,
        InstructionComposer(reader, ledger),
        scenario.payer,
        http=TestClient(app),
        **kwargs,
    )


class TestSelectOffer:
    def test_picks_matching_scheme(self):
        body = {
            "accepts": [
                {"scheme": "exact"},
                {
                    "scheme": "deferred",
                    "network": "solana-devnet",
                    "id": "sub_1",
                    "amount": "100",
                    "recipient": "R",
                    "gateway": "G",
                    "tokenMint": "M",
                    "paymentFrequency": "custom",
                    "paymentFrequencyCustomSeconds": 60,
                },
            ]
        }
        offer = select_deferred_offer(body)
        assert offer.amount == 100
        assert offer.frequency.kind == FrequencyKind.CUSTOM
        assert offer.frequency.interval_seconds == 60

    def test_no_requirements(self):
        with pytest.raises(PaymentProofError, match="No payment requirements"):
            select_deferred_offer({"accepts": []})

    def test_scheme_not_offered(self):
        with pytest.raises(PaymentProofError, match="deferred scheme not offered"):
            select_deferred_offer({"accepts": [{"scheme": "exact"}]})

    def test_malformed_offer(self):
        with pytest.raises(PaymentProofError, match="Malformed deferred offer"):
            DeferredOffer.from_dict({"scheme": "deferred"})

    def test_build_payment_proof(self, scenario):
        offer = DeferredOffer(
            scheme="deferred",
            network="solana-devnet",
            id="sub_9",
            amount=100,
            recipient="R",
            gateway="G",
            token_mint="M",
            payment_frequency="monthly",
        )
        transaction = Transaction.new_signed_with_payer([], scenario.payer.pubkey(), [scenario.payer], Hash.default())
        proof = PaymentProof.decode(build_payment_proof(offer, transaction, x402_version=2))
        assert (proof.scheme, proof.network, proof.id) == ("deferred", "solana-devnet", "sub_9")
        assert proof.x402_version == 2
        assert proof.serialized_transaction == bytes(transaction)


class TestSubscribe:
    def test_full_flow(self, app, ledger, scenario):
        scenario.install_payer_token_account(amount=1_000)

        def land(raw):
            scenario.install_user_payment(active_policies_count=1)
            scenario.install_policy(1)

        ledger.on_submit = land
        with _client(app, ledger, scenario) as client:
            receipt = client.subscribe(URL)
            assert receipt.jwt
            assert receipt.message.startswith("deferred subscription created")

            response = client.fetch(URL, receipt.jwt)
            assert response.status_code == 200
            assert response.json()["policyAddress"] == receipt.policy_address

        # the submitted transaction is the one the client signed
        assert len(ledger.submitted) == 1
        assert receipt.signature == str(Transaction.from_bytes(ledger.submitted[0]).signatures[0])

    def test_proof_carries_quote_id(self, app, ledger, scenario):
        scenario.install_payer_token_account(amount=1_000)
        client = _client(app, ledger, scenario)
        offer = client.request_quote(URL)
        proof = PaymentProof.decode(client.prepare_proof(offer))
        assert proof.id == offer.id
        assert proof.transaction().message.account_keys[0] == scenario.payer.pubkey()
        assert ledger.submitted == []

    def test_insufficient_balance(self, app, ledger, scenario):
        scenario.install_payer_token_account(amount=99)
        client = _client(app, ledger, scenario)
        with pytest.raises(InsufficientBalanceError) as exc:
            client.subscribe(URL)
        assert exc.value.required == 100
        assert exc.value.available == 99

    def test_missing_token_account_counts_as_empty(self, app, ledger, scenario):
        with pytest.raises(InsufficientBalanceError):
            _client(app, ledger, scenario).subscribe(URL)

    def test_offer_above_max_amount(self, app, ledger, scenario):
        client = _client(app, ledger, scenario, max_amount=50)
        with pytest.raises(PaymentProofError, match="exceeds approved max"):
            client.request_quote(URL)

    def test_network_not_allowed(self, app, ledger, scenario):
        client = _client(app, ledger, scenario, allowed_networks=["solana-mainnet"])
        with pytest.raises(PaymentProofError, match="not allowed"):
            client.request_quote(URL)

    def test_rejected_payment(self, app, ledger, scenario):
        scenario.install_payer_token_account(amount=1_000)
        ledger.simulation_err = {"InstructionError": [0, "Custom"]}
        with pytest.raises(PaymentProofError, match=r"Payment rejected \(402\): Transaction simulation failed"):
            _client(app, ledger, scenario).subscribe(URL)

    def test_unpaid_resource_must_answer_402(self, app, ledger, scenario):
        with pytest.raises(PaymentProofError, match="Expected 402 quote, got 200"):
            _client(app, ledger, scenario).request_quote("http://testserver/")
