"""
End-to-end: deferred-payment subscription on devnet.

Starts the premium server in a thread, subscribes with a local keypair,
then reuses the issued credential. Needs GATEWAY_AUTHORITY, TOKEN_MINT,
RECIPIENT_WALLET and JWT_SECRET in the environment and a funded keypair
at ~/.config/solana/id.json.
"""

import sys
import threading
import time
from pathlib import Path

import httpx
import uvicorn

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from tributary.composer import InstructionComposer
from tributary.config import load_rpc_config
from tributary.money import format_amount
from tributary.payer import DeferredPaymentClient
from tributary.reader import PolicyStateReader
from tributary.rpc import LedgerRpcClient
from tributary.server import build_handler_from_env, create_app
from tributary.storage import DEFAULT_KEYPAIR_PATH, read_keypair

URL = "http://127.0.0.1:3001/premium"


def run_server():
    uvicorn.run(create_app(build_handler_from_env()), host="127.0.0.1", port=3001, log_level="error")


def main():
    print("🚀 Tributary E2E: Deferred Subscription on Devnet")
    print("=" * 52)
    print()

    print("1️⃣  Starting premium server...")
    threading.Thread(target=run_server, daemon=True).start()
    time.sleep(2)
    print(f"   ✅ Server running on {URL}")
    print()

    print("2️⃣  Loading keypair...")
    keypair = read_keypair(DEFAULT_KEYPAIR_PATH)
    print(f"   ✅ Payer: {keypair.pubkey()}")
    print()

    rpc = LedgerRpcClient(load_rpc_config())
    composer = InstructionComposer(PolicyStateReader(rpc), rpc)

    with DeferredPaymentClient(rpc, composer, keypair) as client:
        print("3️⃣  Requesting quote...")
        offer = client.request_quote(URL)
        print(f"   Offer {offer.id}: {format_amount(offer.amount, offer.currency)} {offer.payment_frequency}")
        print()

        print("4️⃣  Subscribing...")
        receipt = client.subscribe(URL)
        print(f"   🎉 {receipt.message}")
        print(f"   Policy:   {receipt.policy_address}")
        if receipt.explorer_url:
            print(f"   Explorer: {receipt.explorer_url}")
        print()

        print("5️⃣  Reusing credential...")
        response = client.fetch(URL, receipt.jwt)
        print(f"   Status: {response.status_code}")
        print(f"   Body:   {response.text[:200]}")

        print()
        print("6️⃣  Plain request still gets a quote...")
        print(f"   Status: {httpx.get(URL).status_code}")

    print()
    print("=" * 52)
    rpc.close()


if __name__ == "__main__":
    main()
