"""
End-to-end: pay for an x402 resource on Solana devnet from a delegated account.

Needs a running facilitator (``purser serve``), the paywall in
``paywall_server.py``, and a token account whose owner has approved the
agent key as delegate.

    SOLANA_RPC_URL=https://api.devnet.solana.com \
    AGENT_KEYPAIR_PATH=~/.purser/agent.json \
    SOURCE_TOKEN_ACCOUNT=<delegated USDC account> \
    python devnet_payment.py
"""

import getpass
import os
import sys
from pathlib import Path

from purser.budget import BudgetLedger
from purser.config import load_client_settings
from purser.delegation import DelegationManager
from purser.errors import PurserError
from purser.facilitator_client import FacilitatorClient
from purser.key_managers import EncryptedFileKeyManager
from purser.money import format_token_amount
from purser.rpc import SolanaRpc
from purser.x402_client import X402Config, X402PaymentClient

RESOURCE_URL = os.getenv("RESOURCE_URL", "http://127.0.0.1:8402/data")


def main():
    print("🚀 Purser E2E: x402 payment on Solana devnet")
    print("=" * 50)
    print()

    try:
        settings = load_client_settings()
    except PurserError as e:
        print(f"❌ {e.message}")
        sys.exit(1)

    print("1️⃣  Unlocking agent key...")
    passphrase = os.getenv("AGENT_PASSPHRASE") or getpass.getpass("Agent key passphrase: ")
    agent = EncryptedFileKeyManager(
        Path(settings.agent_keypair_path).expanduser(), passphrase, settings.kdf_params
    )
    print(f"   ✅ Agent: {agent.address}")
    print()

    rpc = SolanaRpc(settings.solana_rpc_url)
    delegations = DelegationManager(rpc)
    source = os.environ["SOURCE_TOKEN_ACCOUNT"]

    print("2️⃣  Checking delegation...")
    status = delegations.inspect(source)
    if not status.is_active or status.delegate != agent.address:
        print(f"   ❌ {source} has no active delegation to {agent.address}")
        sys.exit(1)
    print(f"   ✅ Remaining allowance: {format_token_amount(status.remaining_amount)}")
    print()

    print("3️⃣  Paying for resource...")
    client = X402PaymentClient(
        signer=agent,
        owner_account=source,
        delegations=delegations,
        budget=BudgetLedger(status.remaining_amount, delegations),
        facilitator=FacilitatorClient(settings.facilitator_url, settings.facilitator_fallback_url),
        config=X402Config(network=settings.caip2, max_amount=100_000),
    )
    with client:
        result = client.pay(RESOURCE_URL)
    print()

    if result.success:
        print("   🎉 PAYMENT SUCCESSFUL!")
        print(f"   Signature: {result.transaction}")
        print(f"   Network: {result.network}")
        print(f"   Amount: {format_token_amount(result.amount or 0)}")
        print(f"   Resource status: {result.resource_status}")
    else:
        print(f"   ❌ Payment failed: {result.error}")

    print()
    print("=" * 50)
    rpc.close()


if __name__ == "__main__":
    main()
