"""
FastAPI wiring for a subscription-gated resource.

`SubscriptionGuard` is a route dependency: it hands the verified
`AccessClaims` to the route on a valid bearer credential and answers
every other request (quote, proof processing, rejection) itself.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .audit import AuditTrail
from .config import load_deferred_config, load_rpc_config
from .credentials import AccessClaims, CredentialIssuer
from .deferred import DeferredPaymentHandler, DeferredResponse, policy_owner_identity
from .reader import PolicyStateReader
from .rpc import LedgerRpcClient
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

HOST_ENV = "TRIBUTARY_HOST"
PORT_ENV = "TRIBUTARY_PORT"
AUDIT_PATH_ENV = "TRIBUTARY_AUDIT_PATH"
STRICT_PAYER_ENV = "TRIBUTARY_STRICT_PAYER"


class DeferredResponseException(Exception):
    """Carries a handler response that must be sent instead of the route's."""

    def __init__(self, response: DeferredResponse):
        self.response = response
        super().__init__(response.status_code)


async def _deferred_response_handler(request: Request, exc: DeferredResponseException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.response.status_code,
        content=exc.response.body,
        headers=exc.response.headers,
    )


class SubscriptionGuard:
    """Route dependency enforcing the deferred-payment protocol."""

    def __init__(self, handler: DeferredPaymentHandler):
        self.handler = handler

    def __call__(
        self,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_payment: Optional[str] = Header(default=None),
    ) -> AccessClaims:
        response = self.handler.handle(
            str(request.url),
            authorization=authorization,
            x_payment=x_payment,
        )
        if response.access_granted:
            return response.claims
        raise DeferredResponseException(response)


def create_app(handler: DeferredPaymentHandler) -> FastAPI:
    app = FastAPI(title="Tributary deferred payments")
    app.add_exception_handler(DeferredResponseException, _deferred_response_handler)
    guard = SubscriptionGuard(handler)

    @app.get("/")
    def root():
        return {"status": "ok", "scheme": handler.config.scheme, "network": handler.config.network}

    @app.get("/premium")
    def premium(claims: AccessClaims = Depends(guard)):
        return {
            "data": "Premium content - Subscription verified!",
            "policyAddress": claims.policy_address,
        }

    return app


def build_handler_from_env() -> DeferredPaymentHandler:
    config = load_deferred_config()
    rpc = LedgerRpcClient(load_rpc_config())
    reader = PolicyStateReader(rpc, config.program_id)
    audit_path = os.getenv(AUDIT_PATH_ENV)
    strict = os.getenv(STRICT_PAYER_ENV, "").lower() == "true"
    handler_kwargs = {"payer_extractor": policy_owner_identity} if strict else {}
    return DeferredPaymentHandler(
        config=config,
        rpc=rpc,
        verifier=PaymentVerifier(reader),
        credentials=CredentialIssuer.from_secret(config.jwt_secret, config.credential_ttl_seconds),
        audit=AuditTrail(Path(audit_path)) if audit_path else None,
        **handler_kwargs,
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler = build_handler_from_env()
    host = os.getenv(HOST_ENV, "127.0.0.1")
    port = int(os.getenv(PORT_ENV, "3001"))
    logger.info("Deferred payment server listening on %s:%d", host, port)
    uvicorn.run(create_app(handler), host=host, port=port)


if __name__ == "__main__":
    main()
