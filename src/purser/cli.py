"""
Purser CLI: key custody, delegation inspection and the facilitator service.

Commands:
    purser keygen        Generate and encrypt a new agent key
    purser address       Print the address of an encrypted key file
    purser status        Show delegation status of a token account
    purser fee-reserve   Show the SOL balance of a fee payer
    purser inspect-tx    Decode the transfers in a base64 transaction
    purser audit         Read the tamper-evident audit trail
    purser wipe          Securely delete an encrypted key file
    purser serve         Run the facilitator HTTP service
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from . import __version__, keystore
from .audit import AuditAction, JsonlAuditTrail
from .config import load_facilitator_settings
from .delegation import DelegationManager
from .errors import PurserError
from .fee_reserve import DEFAULT_ALERT_THRESHOLD_SOL, FeeReserveMonitor
from .keystore import kdf_params_for_mode
from .money import format_token_amount, lamports_to_sol
from .rpc import SolanaRpc
from .verifier import decode_transaction, parse_transfer_instructions

DEFAULT_RPC_URL = "https://api.devnet.solana.com"

_rpc_option = click.option(
    "--rpc-url",
    envvar="SOLANA_RPC_URL",
    default=DEFAULT_RPC_URL,
    show_default=True,
    help="Solana JSON-RPC endpoint",
)
_kdf_option = click.option(
    "--kdf-mode",
    type=click.Choice(["fast", "production"]),
    envvar="PURSER_KDF_MODE",
    default="production",
    show_default=True,
    help="scrypt cost profile used for the key file",
)


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _refuse_argv_secret(param: str, flag: str, allowed: bool) -> None:
    ctx = click.get_current_context(silent=True)
    from_argv = ctx is not None and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    if from_argv and not allowed:
        _fail(
            f"Refusing --{param.replace('_', '-')} from argv. Re-run with prompt input or pass "
            f"{flag} to acknowledge the risk."
        )


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", envvar="LOG_LEVEL", default="info", help="Logging level")
def main(log_level: str):
    """Purser: bounded, revocable spending authority for AI agents on Solana."""
    level = "WARNING" if log_level.lower() == "warn" else log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--output", "-o", "output", required=True, type=click.Path(path_type=Path),
              help="Where to write the encrypted key file")
@click.option("--passphrase", prompt=True, hide_input=True, confirmation_prompt=True,
              help="Passphrase protecting the key file (min 12 characters)")
@click.option(
    "--unsafe-allow-passphrase-arg",
    is_flag=True,
    default=False,
    help="Allow passing --passphrase via argv (unsafe; can leak in shell/process history).",
)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing key file")
@_kdf_option
def keygen(output: Path, passphrase: str, unsafe_allow_passphrase_arg: bool, force: bool, kdf_mode: str):
    """Generate a new agent key and store it encrypted."""
    _refuse_argv_secret("passphrase", "--unsafe-allow-passphrase-arg", unsafe_allow_passphrase_arg)

    address, secret = keystore.generate()
    try:
        with keystore.secret_buffer(secret) as buf:
            path = keystore.store(
                buf,
                passphrase,
                output.expanduser(),
                overwrite=force,
                kdf_params=kdf_params_for_mode(kdf_mode),
            )
    except PurserError as e:
        _fail(f"Failed to create key: {e.message}")

    click.echo(f"✅ Key created: {address}")
    click.echo(f"   Saved to: {path}")


@main.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--passphrase", prompt=True, hide_input=True, help="Key file passphrase")
@click.option(
    "--unsafe-allow-passphrase-arg",
    is_flag=True,
    default=False,
    help="Allow passing --passphrase via argv (unsafe; can leak in shell/process history).",
)
@_kdf_option
def address(path: Path, passphrase: str, unsafe_allow_passphrase_arg: bool, kdf_mode: str):
    """Decrypt a key file and print its public address."""
    _refuse_argv_secret("passphrase", "--unsafe-allow-passphrase-arg", unsafe_allow_passphrase_arg)
    try:
        signer = keystore.load(path.expanduser(), passphrase, kdf_params_for_mode(kdf_mode))
    except PurserError as e:
        _fail(f"[{e.code.value}] {e.message}")
    click.echo(signer.address)
    signer.destroy()


@main.command()
@click.argument("token_account")
@_rpc_option
@click.option("--decimals", type=int, default=6, show_default=True, help="Token decimals for display")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw JSON")
def status(token_account: str, rpc_url: str, decimals: int, as_json: bool):
    """Show the on-chain delegation status of a token account."""
    with SolanaRpc(rpc_url) as rpc:
        try:
            info = DelegationManager(rpc).inspect(token_account)
        except PurserError as e:
            _fail(f"[{e.code.value}] {e.message}")

    if as_json:
        _echo_json(info.to_dict())
        return

    click.echo(f"Token account: {info.owner_account}")
    click.echo(f"  Mint:      {info.asset_id}")
    click.echo(f"  Active:    {'yes' if info.is_active else 'no'}")
    click.echo(f"  Delegate:  {info.delegate or '-'}")
    click.echo(f"  Remaining: {format_token_amount(info.remaining_amount, decimals, symbol='')}".rstrip())
    if info.frozen:
        click.echo("  ⚠️  Account is frozen")


@main.command("fee-reserve")
@click.argument("address")
@_rpc_option
@click.option("--threshold", type=float, default=DEFAULT_ALERT_THRESHOLD_SOL, show_default=True,
              help="Alert threshold in SOL")
def fee_reserve(address: str, rpc_url: str, threshold: float):
    """Show the SOL balance and health of a fee payer."""
    with SolanaRpc(rpc_url) as rpc:
        try:
            reserve = FeeReserveMonitor(rpc, address, threshold).check_balance()
        except PurserError as e:
            _fail(f"[{e.code.value}] {e.message}")

    data = reserve.to_dict()
    data["balance_sol"] = str(lamports_to_sol(reserve.balance_lamports))
    _echo_json(data)


@main.command("inspect-tx")
@click.argument("transaction")
def inspect_tx(transaction: str):
    """Decode a base64 transaction and list its token transfers."""
    try:
        decoded = decode_transaction(transaction.strip())
    except PurserError as e:
        _fail(f"[{e.code.value}] {e.message}")

    _echo_json(
        {
            "version": "legacy" if decoded.version is None else decoded.version,
            "fee_payer": decoded.fee_payer,
            "signers": list(decoded.signers),
            "recent_blockhash": decoded.recent_blockhash,
            "lookup_tables": decoded.lookup_table_count,
            "transfers": [t.to_dict() for t in parse_transfer_instructions(decoded)],
        }
    )


@main.command()
@click.option("--path", type=click.Path(path_type=Path), default=None, help="Audit log path")
@click.option("--key-path", type=click.Path(path_type=Path), default=None, help="HMAC key file for the hash chain")
@click.option("--action", type=click.Choice([a.value for a in AuditAction]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--summary", "show_summary", is_flag=True, default=False, help="Print counts by status")
def audit(path: Optional[Path], key_path: Optional[Path], action: Optional[str], limit: int, show_summary: bool):
    """Read the audit trail, verifying its hash chain."""
    try:
        trail = JsonlAuditTrail(path, key_path)
        if show_summary:
            _echo_json(trail.summary())
            return
        entries = trail.read_entries(AuditAction(action) if action else None, limit=limit)
    except PurserError as e:
        _fail(f"[{e.code.value}] {e.message}")

    if not entries:
        click.echo("No audit entries.")
        return
    for entry in entries:
        mark = "✅" if entry.status == "success" else "❌"
        reason = f" ({entry.error_reason})" if entry.error_reason else ""
        click.echo(f"{entry.timestamp} {mark} {entry.action} {entry.amount} → {entry.recipient_address}{reason}")


@main.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.confirmation_option(prompt="Securely delete this key file? This cannot be undone.")
def wipe(path: Path):
    """Overwrite and delete an encrypted key file."""
    if keystore.secure_delete(path.expanduser()):
        click.echo(f"✓ Deleted {path}")
    else:
        _fail(f"Key file not found: {path}")


@main.command()
@click.option("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT or 4020)")
def serve(host: Optional[str], port: Optional[int]):
    """Run the facilitator service configured from the environment."""
    import uvicorn

    from .server import build_facilitator, create_app

    try:
        settings = load_facilitator_settings()
        facilitator = build_facilitator(settings)
    except PurserError as e:
        _fail(e.message)

    uvicorn.run(
        create_app(facilitator),
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning" if settings.log_level == "warn" else settings.log_level,
    )


if __name__ == "__main__":
    main()
