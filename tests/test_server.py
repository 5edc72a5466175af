"""Tests for the FastAPI wiring of a subscription-gated resource."""

import pytest
from fastapi.testclient import TestClient

from tributary.config import DeferredConfig
from tributary.credentials import AccessClaims, CredentialIssuer
from tributary.deferred import PAYMENT_RESPONSE_HEADER, DeferredPaymentHandler
from tributary.proof import PaymentProof
from tributary.reader import PolicyStateReader
from tributary.server import build_handler_from_env, create_app
from tributary.state import PaymentStatus
from tributary.verifier import PaymentVerifier

SECRET = "server-test-secret-with-enough-bytes"


@pytest.fixture
def handler(ledger, scenario):
    scenario.install_program()
    scenario.install_payer_token_account()
    config = DeferredConfig(
        amount=100,
        recipient=str(scenario.recipient),
        gateway=str(scenario.gateway),
        token_mint=str(scenario.token_mint),
        jwt_secret=SECRET,
    )
    return DeferredPaymentHandler(
        config=config,
        rpc=ledger,
        verifier=PaymentVerifier(PolicyStateReader(ledger)),
        credentials=CredentialIssuer.from_secret(SECRET),
    )


@pytest.fixture
def client(handler):
    return TestClient(create_app(handler))


def _credential(handler, scenario, policy):
    return handler.credentials.issue(
        AccessClaims(
            policy_address=str(policy),
            subscription_id="sub_1",
            amount=100,
            recipient=str(scenario.recipient),
            gateway=str(scenario.gateway),
            token_mint=str(scenario.token_mint),
            payment_frequency="monthly",
            auto_renew=False,
        )
    )


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "scheme": "deferred", "network": "solana-devnet"}


def test_premium_without_payment_returns_quote(client):
    response = client.get("/premium")
    assert response.status_code == 402
    offer = response.json()["accepts"][0]
    assert offer["scheme"] == "deferred"
    assert offer["resource"].endswith("/premium")


def test_premium_with_valid_credential(client, handler, scenario):
    policy = scenario.install_policy(1)
    response = client.get(
        "/premium", headers={"Authorization": f"Bearer {_credential(handler, scenario, policy)}"}
    )
    assert response.status_code == 200
    assert response.json() == {
        "data": "Premium content - Subscription verified!",
        "policyAddress": str(policy),
    }


def test_premium_with_paused_policy(client, handler, scenario):
    policy = scenario.install_policy(1, status=PaymentStatus.PAUSED)
    response = client.get(
        "/premium", headers={"Authorization": f"Bearer {_credential(handler, scenario, policy)}"}
    )
    assert response.status_code == 402
    assert response.json()["error"] == "Invalid or inactive subscription"


def test_premium_with_proof_returns_credential(client, ledger, scenario):
    scenario.install_user_payment(active_policies_count=1)
    scenario.install_policy(1)
    tx = ledger.sign_transaction([], [scenario.payer])
    header = PaymentProof("deferred", "solana-devnet", "sub_9", bytes(tx)).encode()

    response = client.get("/premium", headers={"X-Payment": header})

    assert response.status_code == 200
    body = response.json()
    assert body["message"].startswith("Existing deferred subscription verified")
    assert "jwt" in body
    assert 'id="sub_9"' in response.headers[PAYMENT_RESPONSE_HEADER]


def test_build_handler_from_env(monkeypatch, scenario, tmp_path):
    monkeypatch.setenv("GATEWAY_AUTHORITY", str(scenario.authority.pubkey()))
    monkeypatch.setenv("TOKEN_MINT", str(scenario.token_mint))
    monkeypatch.setenv("RECIPIENT_WALLET", str(scenario.recipient))
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("SUBSCRIPTION_AMOUNT", "250")
    monkeypatch.setenv("TRIBUTARY_STRICT_PAYER", "true")
    monkeypatch.setenv("TRIBUTARY_AUDIT_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr("tributary.audit.DEFAULT_AUDIT_KEY_PATH", tmp_path / "secret" / "audit.key")

    handler = build_handler_from_env()

    assert handler.config.amount == 250
    assert handler.config.gateway == str(scenario.gateway)
    assert handler.payer_extractor.__name__ == "policy_owner_identity"
    assert handler.audit.path == tmp_path / "audit.jsonl"
    handler.rpc.close()
