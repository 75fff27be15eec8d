"""
Auth broker command line interface.

  serve           run the broker under uvicorn
  encrypt-backup  encrypt a backup phrase to a base64 file
  decrypt-backup  decrypt a base64 backup file
  verify-audit    check the hash chain of the handshake audit log

Exit codes: 0 ok, 1 failure.
"""

import argparse
import base64
import getpass
import json
import logging
import sys
from pathlib import Path

import uvicorn
from pydantic import ValidationError

from .audit import LOG_NAME, STATE_NAME, verify_log_chain
from .backup import decrypt_backup_phrase, encrypt_backup_phrase
from .config import Settings
from .context import BrokerContext
from .errors import AuthenticationFailure
from .main import create_app


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        settings = Settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    # sign-in links are built from PORT, so overrides must reach the app too
    overrides = {}
    if args.host:
        overrides["HOST"] = args.host
    if args.port:
        overrides["PORT"] = args.port
    settings = settings.model_copy(update=overrides)

    setup_logging(settings.LOG_LEVEL)
    try:
        app = create_app(BrokerContext.create(settings))
    except (ValueError, OSError, AuthenticationFailure) as e:
        print(f"Cannot start broker: {e}", file=sys.stderr)
        return 1

    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
    return 0


def cmd_encrypt_backup(args: argparse.Namespace) -> int:
    phrase = getpass.getpass("Backup phrase: ")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match", file=sys.stderr)
        return 1

    try:
        data = encrypt_backup_phrase(phrase, password)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    encoded = base64.b64encode(data).decode("ascii")
    if args.output:
        Path(args.output).write_text(encoded + "\n", encoding="ascii")
        print(f"Wrote {args.output}", file=sys.stderr)
    else:
        print(encoded)
    return 0


def cmd_decrypt_backup(args: argparse.Namespace) -> int:
    try:
        data = base64.b64decode(Path(args.file).read_text(encoding="ascii").strip(), validate=True)
    except (OSError, ValueError) as e:
        print(f"Cannot read {args.file}: {e}", file=sys.stderr)
        return 1

    try:
        phrase = decrypt_backup_phrase(data, getpass.getpass("Password: "))
    except AuthenticationFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(phrase)
    return 0


def cmd_verify_audit(args: argparse.Namespace) -> int:
    log_path = Path(args.log) if args.log else Path(Settings().AUDIT_DIR) / LOG_NAME

    if not verify_log_chain(log_path):
        print(f"FAIL: hash chain broken in {log_path}", file=sys.stderr)
        return 1

    state_path = log_path.with_name(STATE_NAME)
    if state_path.exists() and log_path.exists():
        lines = [ln for ln in log_path.read_text(encoding="utf-8").splitlines() if ln.strip()]
        head = state_path.read_text(encoding="utf-8").strip()
        if lines and json.loads(lines[-1]).get("hash") != head:
            print(f"FAIL: {state_path} does not match the last log entry", file=sys.stderr)
            return 1

    print("OK")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authbroker",
        description="Local decentralized-identity authentication broker",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the broker")
    p.add_argument("--host", default=None, help="Bind address (default: AUTH_BROKER_HOST)")
    p.add_argument("--port", type=int, default=None, help="Port (default: AUTH_BROKER_PORT)")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("encrypt-backup", help="Encrypt a backup phrase")
    p.add_argument("-o", "--output", default=None, help="Write base64 output here instead of stdout")
    p.set_defaults(func=cmd_encrypt_backup)

    p = sub.add_parser("decrypt-backup", help="Decrypt a backup phrase file")
    p.add_argument("file", help="File holding the base64 encrypted backup")
    p.set_defaults(func=cmd_decrypt_backup)

    p = sub.add_parser("verify-audit", help="Verify the audit log hash chain")
    p.add_argument("log", nargs="?", default=None, help="Audit JSONL file (default: AUDIT_DIR/handshake_audit.jsonl)")
    p.set_defaults(func=cmd_verify_audit)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)
