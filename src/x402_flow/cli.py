"""Command-line entry point: ``x402-flow``.

Commands:
    x402-flow facilitator start [--host H] [--port P] [--wallet ADDR | --private-key HEX]
                                [--network N]
    x402-flow facilitator stop
    x402-flow test payment --api URL --amount N [--facilitator URL]
                           [--wallet ADDR_OR_PATH | --private-key HEX]

``facilitator start`` runs in the foreground and records its pid so that
``facilitator stop`` can send it SIGTERM from another shell; stopping a
facilitator that is not running is a no-op. ``test payment`` exits 0 when
the session completes and 1 when it fails, printing the reason to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
import time
from pathlib import Path

from x402_flow import __version__
from x402_flow.config import Settings, get_settings
from x402_flow.crypto.keys import KeyMaterial
from x402_flow.crypto.wallet import load_wallet, wallet_path_for
from x402_flow.domain.exceptions import FlowError, X402Error
from x402_flow.logging_config import get_logger, setup_logging

logger = get_logger("x402_flow.cli")


# ---------------------------------------------------------------------------
# facilitator start / stop
# ---------------------------------------------------------------------------
def _read_pid(pid_file: Path) -> int | None:
    try:
        return int(pid_file.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning("cli.pid_file.corrupt", path=str(pid_file))
        return None


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def _serve(args: argparse.Namespace, settings: Settings) -> None:
    from x402_flow.main import build_facilitator_service
    from x402_flow.server import FacilitatorServer

    service = build_facilitator_service(
        settings,
        wallet=args.wallet,
        private_key=args.private_key,
        network=args.network,
    )
    server = FacilitatorServer(
        service,
        host=args.host or settings.facilitator_host,
        port=args.port or settings.facilitator_port,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def cmd_facilitator_start(args: argparse.Namespace, settings: Settings) -> int:
    pid_file = settings.pid_file_path
    existing = _read_pid(pid_file)
    if existing is not None and existing != os.getpid() and _process_alive(existing):
        print(f"Facilitator already running (pid {existing})", file=sys.stderr)
        return 1

    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()), encoding="utf-8")
    try:
        asyncio.run(_serve(args, settings))
    except X402Error as exc:
        print(f"Facilitator failed to start: {exc.message}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Facilitator failed to start: {exc}", file=sys.stderr)
        return 1
    finally:
        if _read_pid(pid_file) == os.getpid():
            pid_file.unlink(missing_ok=True)
    return 0


def cmd_facilitator_stop(args: argparse.Namespace, settings: Settings) -> int:
    pid_file = settings.pid_file_path
    pid = _read_pid(pid_file)
    if pid is None or not _process_alive(pid):
        pid_file.unlink(missing_ok=True)
        print("Facilitator is not running")
        return 0

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + settings.shutdown_grace_seconds
    while _process_alive(pid):
        if time.monotonic() > deadline:
            print(f"Facilitator (pid {pid}) did not stop in time", file=sys.stderr)
            return 1
        time.sleep(0.1)

    pid_file.unlink(missing_ok=True)
    print(f"Facilitator stopped (pid {pid})")
    return 0


# ---------------------------------------------------------------------------
# test payment
# ---------------------------------------------------------------------------
def _resolve_payer(args: argparse.Namespace, settings: Settings) -> KeyMaterial:
    """Pick the payer key: --private-key, --wallet, configured wallet, or fresh."""
    if args.private_key:
        return KeyMaterial.from_private_key_hex(args.private_key)

    wallet = args.wallet or settings.wallet_path
    if wallet:
        path = Path(wallet).expanduser()
        if not path.exists():
            path = wallet_path_for(wallet)
        key, info = load_wallet(path)
        logger.info("cli.wallet_loaded", address=info.address, network=info.network)
        return key

    key = KeyMaterial.generate()
    logger.warning("cli.ephemeral_payer", account_id=key.account_id())
    return key


async def _pay(args: argparse.Namespace, settings: Settings, payer: KeyMaterial) -> int:
    from x402_flow.orchestration.payment_flow import FlowConfig, PaymentFlowEngine

    facilitator_url = args.facilitator or settings.facilitator_url
    async with PaymentFlowEngine(
        facilitator_url, config=FlowConfig.from_settings(settings)
    ) as engine:
        try:
            outcome = await engine.run(args.api, args.amount, payer)
        except FlowError as exc:
            print(f"Payment failed: {exc}", file=sys.stderr)
            return 1

    print(f"Status:        {outcome.state} (HTTP {outcome.status_code})")
    if outcome.paid:
        print(f"Paid:          {outcome.amount} from {outcome.payer_account}")
        print(f"Nonce:         {outcome.nonce}")
        print(f"Settlement ID: {outcome.settlement_id}")
    else:
        print("Paid:          no payment required")
    print(f"Elapsed:       {outcome.elapsed_ms:.0f} ms")
    preview = outcome.body[:200].decode("utf-8", errors="replace")
    print(f"Body:          {preview}")
    return 0


def cmd_test_payment(args: argparse.Namespace, settings: Settings) -> int:
    if args.amount < 0:
        print("--amount must be non-negative", file=sys.stderr)
        return 1
    try:
        payer = _resolve_payer(args, settings)
    except X402Error as exc:
        print(f"Payment failed: {exc.message}", file=sys.stderr)
        return 1
    with payer:
        return asyncio.run(_pay(args, settings, payer))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="x402-flow",
        description="x402 pay-per-request client and facilitator",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Override X402_APP_LOG_LEVEL.")
    commands = parser.add_subparsers(dest="command", required=True)

    facilitator = commands.add_parser("facilitator", help="Run or stop the facilitator.")
    facilitator_commands = facilitator.add_subparsers(dest="action", required=True)

    start = facilitator_commands.add_parser("start", help="Start the facilitator (foreground).")
    start.add_argument("--host", default=None, help="Bind address. Default: settings.")
    start.add_argument("--port", type=int, default=None, help="Listen port. Default: 3001.")
    identity = start.add_mutually_exclusive_group()
    identity.add_argument("--wallet", default=None, help="Facilitator account address.")
    identity.add_argument("--private-key", default=None, help="Facilitator Ed25519 key (hex).")
    start.add_argument("--network", default=None, help="Network name. Default: testnet.")
    start.set_defaults(handler=cmd_facilitator_start)

    stop = facilitator_commands.add_parser("stop", help="Stop a running facilitator.")
    stop.set_defaults(handler=cmd_facilitator_stop)

    test = commands.add_parser("test", help="Exercise the payment flow.")
    test_commands = test.add_subparsers(dest="action", required=True)

    payment = test_commands.add_parser("payment", help="Pay for one resource request.")
    payment.add_argument("--api", required=True, help="Resource URL to request.")
    payment.add_argument("--amount", type=int, required=True, help="Amount to offer.")
    payment.add_argument("--facilitator", default=None, help="Facilitator base URL.")
    payer = payment.add_mutually_exclusive_group()
    payer.add_argument("--wallet", default=None, help="Wallet address or wallet file path.")
    payer.add_argument("--private-key", default=None, help="Payer Ed25519 key (hex).")
    payment.set_defaults(handler=cmd_test_payment)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        log_level=args.log_level or settings.app_log_level,
        json_logs=not settings.is_development,
    )
    return args.handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
