"""
authbroker/audit.py

Tamper-evident handshake audit log.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores prev_hash and hash. Any modification, deletion or reordering
of lines breaks the chain. The chain head is persisted next to the log in a
.state file; appends take an flock on a dedicated .lock file.

Events describe handshakes (request issued, sign-in approved, handshake
failed). They never carry tokens or keys, only their lengths and hashes.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

LOG_NAME = "handshake_audit.jsonl"
STATE_NAME = "handshake_audit.state"
LOCK_NAME = "handshake_audit.lock"

GENESIS_HASH = "0" * 64

EVENT_REQUEST_ISSUED = "auth_request_issued"
EVENT_SIGNIN_APPROVED = "signin_approved"
EVENT_HANDSHAKE_FAILED = "handshake_failed"


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def build_common(
    *,
    event: str,
    state: str,
    app_origin: Optional[str] = None,
    id_address: Optional[str] = None,
    token: Optional[str] = None,
    error: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Common audit fields for one handshake event.

    The inbound token is recorded by length and hash only.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "event": event,
        "state": state,
    }

    if app_origin:
        out["app_origin"] = app_origin
    if id_address:
        out["id_address"] = id_address
    if error:
        out["error"] = error[:500]
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if token is not None:
        raw = token.encode("utf-8")
        out["token_len"] = len(raw)
        out["token_sha3_256"] = _sha3_256_hex(raw)

    return out


class AuditLog:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Chain head from the state file; GENESIS_HASH if missing or garbled."""
        try:
            s = self.state_path.read_text(encoding="utf-8").strip()
            if len(s) != 64:
                return GENESIS_HASH
            bytes.fromhex(s)
            return s.lower()
        except (OSError, ValueError):
            return GENESIS_HASH

    def append_event(self, event: Dict[str, Any]) -> str:
        """Append one event; returns its chain hash."""
        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # callers never set chain fields
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, event: Dict[str, Any]) -> None:
        """append_event() for request handlers: an audit failure never fails a handshake."""
        try:
            self.append_event(event)
        except OSError as e:
            logger.error("Audit append failed: %s", e)


def verify_log_chain(path: str | Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    path = Path(path)
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False

                line_hash = obj.get("hash")
                body = dict(obj)
                body.pop("prev_hash", None)
                body.pop("hash", None)

                if _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(body)) != line_hash:
                    return False

                prev = line_hash
        return True
    except (ValueError, TypeError, AttributeError):
        return False
