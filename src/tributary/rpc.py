"""
JSON-RPC client for the ledger node.

A thin, synchronous wrapper over a pooled `httpx.Client`. Only the methods
the rest of the package consumes are implemented. Transport failures are
retried with linear backoff; answers from the node (JSON-RPC errors,
simulation results, on-ledger failures) are never retried.
"""

from __future__ import annotations

import base64
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import httpx
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .config import RpcConfig
from .errors import (
    ConfirmationTimeoutError,
    NetworkError,
    RetryableError,
    RpcError,
    SubmissionError,
)
from .pda import PubkeyLike, to_pubkey
from .token import TokenAccountState

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 502, 503)
_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}
# Node error code for a transaction rejected during preflight.
_PREFLIGHT_FAILURE = -32002


@dataclass
class AccountInfo:
    data: bytes
    owner: Pubkey
    lamports: int
    executable: bool = False

    @classmethod
    def from_json(cls, value: dict) -> AccountInfo:
        raw, encoding = value["data"]
        if encoding != "base64":
            raise RpcError(f"Unexpected account encoding: {encoding}")
        return cls(
            data=base64.b64decode(raw),
            owner=Pubkey.from_string(value["owner"]),
            lamports=int(value.get("lamports", 0)),
            executable=bool(value.get("executable", False)),
        )


@dataclass
class SimulationResult:
    err: Any = None
    logs: list[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.err is None


@dataclass
class LatestBlockhash:
    blockhash: Hash
    last_valid_block_height: int


class LedgerRpcClient:
    """Ledger node client. Safe to share between threads."""

    def __init__(self, config: Optional[RpcConfig] = None, http: Optional[httpx.Client] = None):
        self.config = config or RpcConfig()
        self._http = http or httpx.Client(timeout=self.config.timeout_seconds)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ── Transport ─────────────────────────────────────────────────

    def _call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        max_retries = self.config.max_retries
        last_error: Optional[str] = None

        for attempt in range(max_retries + 1):
            try:
                response = self._http.post(self.config.url, json=payload)
            except httpx.TimeoutException as e:
                last_error = f"Request timeout: {e}"
            except httpx.ConnectError as e:
                last_error = f"Connection failed: {e}"
            except httpx.TransportError as e:
                last_error = f"Transport error: {e}"
            except httpx.HTTPError as e:
                raise NetworkError(f"{method}: {e}") from e
            else:
                if response.status_code in _RETRYABLE_STATUS:
                    last_error = f"RPC node unavailable ({response.status_code})"
                    if attempt == max_retries:
                        retry_after = float(response.headers.get("Retry-After", self.config.retry_delay) or 0)
                        raise RetryableError(
                            f"{method} failed after {max_retries + 1} attempts: {last_error}",
                            retry_after=retry_after,
                        )
                elif response.status_code != 200:
                    raise NetworkError(
                        f"{method}: unexpected status {response.status_code}: {response.text[:200]}"
                    )
                else:
                    return self._unwrap(method, response)

            if attempt < max_retries:
                logger.info(
                    "Retryable RPC failure on %s (attempt %d/%d): %s",
                    method,
                    attempt + 1,
                    max_retries + 1,
                    last_error,
                )
                time.sleep(self.config.retry_delay * (attempt + 1))

        raise NetworkError(f"{method} failed after {max_retries + 1} attempts: {last_error}")

    @staticmethod
    def _unwrap(method: str, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON") from e
        if "error" in body and body["error"] is not None:
            error = body["error"]
            raise RpcError(error.get("message", "unknown error"), error.get("code"), error.get("data"))
        return body.get("result")

    # ── Accounts ──────────────────────────────────────────────────

    def get_account_info(self, address: PubkeyLike) -> Optional[AccountInfo]:
        result = self._call(
            "getAccountInfo",
            [
                str(to_pubkey(address)),
                {"encoding": "base64", "commitment": self.config.commitment},
            ],
        )
        value = (result or {}).get("value")
        return AccountInfo.from_json(value) if value else None

    def get_program_accounts(
        self,
        program_id: PubkeyLike,
        data_size: Optional[int] = None,
        memcmp: Sequence[tuple[int, bytes]] = (),
    ) -> list[tuple[Pubkey, AccountInfo]]:
        filters: list[dict] = []
        if data_size is not None:
            filters.append({"dataSize": data_size})
        for offset, value in memcmp:
            filters.append(
                {
                    "memcmp": {
                        "offset": offset,
                        "bytes": base64.b64encode(bytes(value)).decode(),
                        "encoding": "base64",
                    }
                }
            )
        options: dict = {"encoding": "base64", "commitment": self.config.commitment}
        if filters:
            options["filters"] = filters

        result = self._call("getProgramAccounts", [str(to_pubkey(program_id, "program_id")), options])
        return [
            (Pubkey.from_string(item["pubkey"]), AccountInfo.from_json(item["account"]))
            for item in result or []
        ]

    def get_token_account(self, address: PubkeyLike) -> Optional[TokenAccountState]:
        info = self.get_account_info(address)
        if info is None:
            return None
        return TokenAccountState.from_bytes(info.data)

    # ── Transactions ──────────────────────────────────────────────

    def get_latest_blockhash(self) -> LatestBlockhash:
        result = self._call("getLatestBlockhash", [{"commitment": self.config.commitment}])
        value = result["value"]
        return LatestBlockhash(
            blockhash=Hash.from_string(value["blockhash"]),
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    def simulate_transaction(self, raw: bytes) -> SimulationResult:
        result = self._call(
            "simulateTransaction",
            [
                base64.b64encode(raw).decode(),
                {"encoding": "base64", "commitment": self.config.commitment, "sigVerify": False},
            ],
        )
        value = result["value"]
        return SimulationResult(
            err=value.get("err"),
            logs=list(value.get("logs") or []),
            units_consumed=value.get("unitsConsumed"),
        )

    def send_raw_transaction(self, raw: bytes) -> str:
        try:
            signature = self._call(
                "sendTransaction",
                [
                    base64.b64encode(raw).decode(),
                    {"encoding": "base64", "preflightCommitment": self.config.commitment},
                ],
            )
        except RpcError as e:
            if e.code == _PREFLIGHT_FAILURE and isinstance(e.data, dict):
                raise SubmissionError(
                    str(e), details=e.data.get("err"), logs=e.data.get("logs")
                ) from e
            raise
        logger.info("Transaction submitted: %s", signature)
        return signature

    def confirm_transaction(self, signature: str) -> None:
        """Poll until the signature reaches the configured commitment."""
        wanted = _COMMITMENT_RANK.get(self.config.commitment, 1)
        deadline = time.monotonic() + self.config.confirm_timeout_seconds

        while True:
            result = self._call(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": True}],
            )
            status = (result.get("value") or [None])[0]
            if status is not None:
                if status.get("err") is not None:
                    raise SubmissionError(
                        f"Transaction {signature} failed on-ledger", details=status["err"]
                    )
                reached = _COMMITMENT_RANK.get(status.get("confirmationStatus") or "processed", 0)
                if reached >= wanted:
                    return
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Transaction {signature} not confirmed within "
                    f"{self.config.confirm_timeout_seconds}s"
                )
            time.sleep(self.config.poll_interval)

    def sign_transaction(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
    ) -> Transaction:
        """Build and sign a legacy transaction; the first signer pays fees."""
        if not signers:
            raise ValueError("At least one signer is required")
        blockhash = self.get_latest_blockhash().blockhash
        return Transaction.new_signed_with_payer(
            list(instructions), signers[0].pubkey(), list(signers), blockhash
        )

    def send_and_confirm(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
    ) -> str:
        transaction = self.sign_transaction(instructions, signers)
        signature = self.send_raw_transaction(bytes(transaction))
        self.confirm_transaction(signature)
        return signature
