"""Tests for facilitator verify/settle orchestration."""

import base64
import json
from types import SimpleNamespace

import pytest
from solders.compute_budget import set_compute_unit_limit
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.instructions import TransferCheckedParams, get_associated_token_address, transfer_checked

from purser.audit import InMemoryAuditLogger
from purser.config import FacilitatorSettings, GovernanceSettings
from purser.constants import SOLANA_CAIP2, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, USDC_MINT_DEVNET
from purser.delegation import DelegationManager
from purser.facilitator import Facilitator
from purser.governance import CircuitBreakerLimits, SanctionsScreener
from purser.signers import sign_message
from purser.x402 import PaymentRequirements, build_payment_payload

from conftest import new_address, new_signer

MINT = USDC_MINT_DEVNET
NETWORK = SOLANA_CAIP2["devnet"]


class FakeClock:
    def __init__(self):
        self.now = 5000.0

    def __call__(self):
        return self.now


def make_env(ledger, **governance):
    fee_payer, agent = new_signer(), new_signer()
    owner, merchant, source = new_address(), new_address(), new_address()
    ledger.delegate(source, MINT, owner, agent.address, remaining=5_000_000)
    ledger.balances[fee_payer.address] = 1_000_000_000

    settings = FacilitatorSettings(
        solana_rpc_url="https://rpc.test",
        keypair_path="unused.json",
        passphrase="x" * 12,
        governance=GovernanceSettings(**governance),
    )
    audit = InMemoryAuditLogger()
    clock = FakeClock()
    facilitator = Facilitator(ledger, fee_payer, settings, audit, clock=clock)
    env = SimpleNamespace(
        ledger=ledger, fee_payer=fee_payer, agent=agent, owner=owner, merchant=merchant,
        source=source, audit=audit, clock=clock, facilitator=facilitator,
    )
    env.pay = lambda **kw: make_payment(env, **kw)
    return env


def make_payment(env, amount=1_000_000, paid=None, signer=None, requirements=None):
    req = {
        "scheme": "exact",
        "network": NETWORK,
        "asset": MINT,
        "amount": str(amount),
        "payTo": env.merchant,
        "maxTimeoutSeconds": 60,
        "extra": {"feePayer": env.fee_payer.address},
    }
    req.update(requirements or {})
    destination = str(get_associated_token_address(Pubkey.from_string(env.merchant), Pubkey.from_string(MINT)))
    tx = DelegationManager(env.ledger).build_transfer(
        signer or env.agent, env.source, destination, MINT,
        paid if paid is not None else amount, 6, fee_payer=env.fee_payer.address,
    )
    b64 = base64.b64encode(bytes(tx)).decode()
    payload = build_payment_payload(PaymentRequirements.from_dict(req), b64)
    return payload, req


def token_transfer(env, source, authority, amount=1_000_000):
    destination = get_associated_token_address(Pubkey.from_string(env.merchant), Pubkey.from_string(MINT))
    return transfer_checked(
        TransferCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            source=Pubkey.from_string(source),
            mint=Pubkey.from_string(MINT),
            dest=destination,
            owner=Pubkey.from_string(authority),
            amount=amount,
            decimals=6,
        )
    )


def assembled_payment(env, *instructions):
    """A payment whose transaction carries exactly ``instructions``, signed by the agent only."""
    _, req = env.pay()
    message = Message.new_with_blockhash(
        list(instructions),
        Pubkey.from_string(env.fee_payer.address),
        Hash.from_string(env.ledger.get_latest_blockhash().blockhash),
    )
    tx = sign_message(message, [env.agent], allow_partial=True)
    payload = build_payment_payload(PaymentRequirements.from_dict(req), base64.b64encode(bytes(tx)).decode())
    return payload, req


@pytest.fixture
def env(ledger):
    return make_env(ledger)


class TestVerify:
    def test_valid_payment(self, env):
        result = env.facilitator.verify(*env.pay())
        assert result.is_valid, result.invalid_reason
        assert result.payer == env.agent.address
        (entry,) = env.audit.entries
        assert entry.action == "verify"
        assert entry.status == "success"
        assert entry.governance_result["tokenAllowlist"] is True
        assert entry.governance_result["simulation"] is True
        assert entry.latency_ms >= 0

    def test_wrong_network(self, env):
        payload, req = env.pay(requirements={"network": SOLANA_CAIP2["mainnet-beta"]})
        result = env.facilitator.verify(payload, req)
        assert not result.is_valid
        assert result.invalid_reason.startswith("Network mismatch")

    def test_legacy_network_name_accepted(self, env):
        assert env.facilitator.verify(*env.pay(requirements={"network": "solana-devnet"})).is_valid

    def test_underpaying_transaction(self, env):
        result = env.facilitator.verify(*env.pay(amount=1_000_000, paid=999_999))
        assert not result.is_valid
        assert "does not meet required" in result.invalid_reason

    def test_missing_transaction(self, env):
        _, req = env.pay()
        result = env.facilitator.verify({"payload": {}}, req)
        assert not result.is_valid
        assert "transaction is required" in result.invalid_reason
        assert len(env.audit.entries) == 1

    def test_zeroed_agent_signature(self, env):
        payload, req = env.pay()
        raw = bytearray(base64.b64decode(payload["payload"]["transaction"]))
        raw[1 + 64 : 1 + 128] = bytes(64)
        payload["payload"]["transaction"] = base64.b64encode(bytes(raw)).decode()
        result = env.facilitator.verify(payload, req)
        assert not result.is_valid
        assert "Missing or invalid signature" in result.invalid_reason

    def test_fee_payer_cannot_be_authority(self, env):
        env.ledger.delegate(env.source, MINT, env.owner, env.fee_payer.address, remaining=5_000_000)
        result = env.facilitator.verify(*env.pay(signer=env.fee_payer))
        assert not result.is_valid
        assert "cannot be the transfer authority" in result.invalid_reason

    def test_one_audit_entry_per_call(self, env):
        for _ in range(3):
            env.facilitator.verify(*env.pay())
        env.facilitator.verify({}, {})
        assert len(env.audit.entries) == 4


class TestInstructionAllowlist:
    def test_compute_budget_instruction_allowed(self, env):
        payment = assembled_payment(
            env, set_compute_unit_limit(200_000), token_transfer(env, env.source, env.agent.address)
        )
        result = env.facilitator.verify(*payment)
        assert result.is_valid, result.invalid_reason

    def test_system_transfer_from_fee_payer_rejected(self, env):
        drain = transfer(
            TransferParams(
                from_pubkey=Pubkey.from_string(env.fee_payer.address),
                to_pubkey=Pubkey.from_string(new_address()),
                lamports=900_000_000,
            )
        )
        payment = assembled_payment(env, token_transfer(env, env.source, env.agent.address), drain)
        result = env.facilitator.settle(*payment)
        assert not result.success
        assert "disallowed program 11111111111111111111111111111111" in result.error_reason
        assert env.ledger.sent == []
        assert env.audit.entries[-1].status == "rejected"

    def test_second_transfer_with_fee_payer_authority_rejected(self, env):
        fee_payer_tokens = new_address()
        payment = assembled_payment(
            env,
            token_transfer(env, env.source, env.agent.address),
            token_transfer(env, fee_payer_tokens, env.fee_payer.address, amount=5_000_000),
        )
        result = env.facilitator.settle(*payment)
        assert not result.success
        assert result.error_reason == "Facilitator fee payer cannot be the transfer authority"
        assert env.ledger.sent == []

    def test_two_transfers_rejected(self, env):
        payment = assembled_payment(
            env,
            token_transfer(env, env.source, env.agent.address),
            token_transfer(env, env.source, env.agent.address, amount=1),
        )
        result = env.facilitator.verify(*payment)
        assert result.invalid_reason == "Expected exactly one transfer instruction, found 2"

    def test_fee_payer_as_transfer_account_rejected(self, env):
        payment = assembled_payment(env, token_transfer(env, env.fee_payer.address, env.agent.address))
        result = env.facilitator.verify(*payment)
        assert result.invalid_reason == "Instruction 0 references the facilitator fee payer"
        assert "simulate_transaction" not in env.ledger.calls


class TestRequirementExtras:
    def test_malformed_token_program(self, env):
        payload, req = env.pay()
        req["extra"]["tokenProgram"] = "not-a-key"
        result = env.facilitator.verify(payload, req)
        assert result.invalid_reason == "Unsupported token program: not-a-key"
        (entry,) = env.audit.entries
        assert entry.status == "rejected"

    def test_unknown_token_program(self, env):
        payload, req = env.pay()
        program = new_address()
        req["extra"]["tokenProgram"] = program
        result = env.facilitator.settle(payload, req)
        assert result.error_reason == f"Unsupported token program: {program}"
        assert len(env.audit.entries) == 1

    def test_token_2022_program_accepted_for_derivation(self, env):
        payload, req = env.pay()
        req["extra"]["tokenProgram"] = str(TOKEN_2022_PROGRAM_ID)
        result = env.facilitator.verify(payload, req)
        # the ATA derived under Token-2022 differs from the classic one the agent paid
        assert "recipient mismatch" in result.invalid_reason

    def test_malformed_recipient_token_account(self, env):
        payload, req = env.pay()
        req["extra"]["recipientTokenAccount"] = "0xdeadbeef"
        result = env.facilitator.verify(payload, req)
        assert result.invalid_reason == "Invalid recipientTokenAccount address: 0xdeadbeef"
        assert len(env.audit.entries) == 1


class TestGovernance:
    def test_token_checked_before_recipient(self, ledger):
        env = make_env(ledger, allowed_tokens=[new_address()], allowed_recipients=[new_address()])
        result = env.facilitator.verify(*env.pay())
        assert "Token" in result.invalid_reason
        assert env.audit.entries[0].governance_result == {"tokenAllowlist": False}

    def test_recipient_allowlist(self, ledger):
        env = make_env(ledger, allowed_recipients=[new_address()])
        result = env.facilitator.verify(*env.pay())
        assert "Recipient" in result.invalid_reason

    def test_amount_cap(self, ledger):
        env = make_env(ledger, max_settlement_amount=500_000)
        result = env.facilitator.verify(*env.pay(amount=1_000_000))
        assert result.invalid_reason == "Amount 1000000 exceeds cap 500000"
        assert "simulate_transaction" not in ledger.calls

    def test_allowlisted_payment_passes(self, ledger):
        env = make_env(ledger, allowed_tokens=[MINT], max_settlement_amount=1_000_000)
        env.facilitator.settings.governance.allowed_recipients = [env.merchant]
        assert env.facilitator.verify(*env.pay()).is_valid

    def test_delegation_check(self, ledger):
        env = make_env(ledger, delegation_check_enabled=True)
        assert env.facilitator.verify(*env.pay()).is_valid

        env.ledger.delegate(env.source, MINT, env.owner, None, remaining=0)
        result = env.facilitator.verify(*env.pay())
        assert result.invalid_reason.startswith("No active delegation")

    def test_delegation_check_fails_closed(self, ledger, rpc_down):
        env = make_env(ledger, delegation_check_enabled=True)
        payload, req = env.pay()
        ledger.account_error = rpc_down
        result = env.facilitator.verify(payload, req)
        assert result.invalid_reason.startswith("Delegation check failed")

    def test_sanctioned_recipient(self, ledger, tmp_path):
        env = make_env(ledger)
        blocklist = tmp_path / "sdn.json"
        blocklist.write_text(json.dumps([env.merchant]))
        env.facilitator.sanctions = SanctionsScreener.from_file(blocklist)
        result = env.facilitator.verify(*env.pay())
        assert result.invalid_reason == f"Address {env.merchant} is on the sanctions list"
        assert env.audit.entries[0].governance_result["sanctions"] is False

    def test_sanctions_enabled_from_settings(self, ledger, tmp_path):
        blocklist = tmp_path / "sdn.json"
        blocklist.write_text("[]")
        env = make_env(ledger, sanctions_screening_enabled=True, sanctions_blocklist_path=str(blocklist))
        assert env.facilitator.verify(*env.pay()).is_valid
        assert env.audit.entries[0].governance_result["sanctions"] is True

    def test_circuit_breaker_trips_on_settle(self, ledger):
        env = make_env(
            ledger,
            circuit_breaker_enabled=True,
            circuit_breaker=CircuitBreakerLimits(max_same_recipient_per_minute=1),
        )
        assert env.facilitator.settle(*env.pay()).success
        second = env.facilitator.settle(*env.pay())
        assert second.error_reason.startswith(f"Same recipient {env.merchant}")
        assert env.audit.entries[-1].governance_result["circuitBreaker"] is False
        assert env.facilitator.verify(*env.pay()).is_valid


class TestSettle:
    def test_cosigns_and_submits(self, env):
        result = env.facilitator.settle(*env.pay())
        assert result.success, result.error_reason
        assert result.network == NETWORK
        assert result.payer == env.agent.address

        (sent,) = env.ledger.sent
        tx = Transaction.from_bytes(base64.b64decode(sent))
        tx.verify()
        assert str(tx.signatures[0]) == result.transaction
        assert str(tx.message.account_keys[0]) == env.fee_payer.address

        (entry,) = env.audit.entries
        assert entry.action == "settle"
        assert entry.tx_signature == result.transaction
        assert env.facilitator.replay_guard.size() == 1

    def test_replay_rejected(self, env):
        payment = env.pay()
        assert env.facilitator.settle(*payment).success
        again = env.facilitator.settle(*payment)
        assert not again.success
        assert again.error_reason.startswith("Duplicate transaction")
        assert len(env.ledger.sent) == 1

    def test_replay_entry_expires(self, env):
        payment = env.pay()
        assert env.facilitator.settle(*payment).success
        env.clock.now += 60 + 60 + 1
        assert env.facilitator.settle(*payment).success

    def test_expired_replay_entries_swept(self, env):
        assert env.facilitator.settle(*env.pay()).success
        env.clock.now += 60 + 60 + 1
        assert env.facilitator.settle(*env.pay()).success
        assert env.facilitator.replay_guard.size() == 1

    def test_rate_limit(self, ledger):
        env = make_env(ledger, rate_limit_per_minute=1)
        assert env.facilitator.settle(*env.pay()).success
        second = env.facilitator.settle(*env.pay())
        assert second.error_reason.startswith("Rate limit exceeded")
        env.clock.now += 61
        assert env.facilitator.settle(*env.pay()).success

    def test_low_fee_reserve_fails(self, env):
        env.ledger.balances[env.fee_payer.address] = 0
        result = env.facilitator.settle(*env.pay())
        assert not result.success
        assert "fee reserve" in result.error_reason
        assert env.audit.entries[-1].status == "failed"
        assert env.ledger.sent == []

    def test_fee_reserve_rpc_error_fails_open(self, env, rpc_down):
        env.ledger.balance_error = rpc_down
        assert env.facilitator.settle(*env.pay()).success

    def test_expired_blockhash(self, ledger):
        env = make_env(ledger, blockhash_validation_enabled=True)
        ledger.blockhash_valid = False
        result = env.facilitator.settle(*env.pay())
        assert "blockhash expired" in result.error_reason
        assert ledger.sent == []

    def test_blockhash_rpc_error_fails_open(self, ledger, rpc_down):
        env = make_env(ledger, blockhash_validation_enabled=True)
        ledger.blockhash_error = rpc_down
        assert env.facilitator.settle(*env.pay()).success

    def test_submission_failure_allows_retry(self, env, rpc_down):
        payment = env.pay()
        env.ledger.send_error = rpc_down
        result = env.facilitator.settle(*payment)
        assert result.error_reason.startswith("Transaction submission failed")
        assert env.audit.entries[-1].status == "failed"
        assert env.facilitator.replay_guard.size() == 0

        env.ledger.send_error = None
        assert env.facilitator.settle(*payment).success

    def test_skip_simulation_before_submit(self, ledger):
        env = make_env(ledger, simulate_before_submit=False)
        assert env.facilitator.settle(*env.pay()).success
        assert ledger.simulated == []


def test_supported(env):
    (kind,) = env.facilitator.get_supported()["kinds"]
    assert kind["scheme"] == "exact"
    assert kind["network"] == NETWORK
    assert kind["extra"]["feePayer"] == env.fee_payer.address
