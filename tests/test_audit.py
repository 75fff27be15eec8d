"""
Tests for the hash-chained audit log.
"""

import json

from authbroker.audit import GENESIS_HASH, AuditLog, build_common, verify_log_chain
from authbroker.cli import main as cli_main


def _events(n):
    return [build_common(event="signin_approved", state="done", app_origin="https://app.example", token=f"t{i}") for i in range(n)]


class TestAppend:
    def test_chain_links(self, tmp_path):
        log = AuditLog(tmp_path)
        hashes = [log.append_event(e) for e in _events(3)]

        lines = [json.loads(line) for line in log.log_path.read_text().splitlines()]
        assert lines[0]["prev_hash"] == GENESIS_HASH
        assert [ln["hash"] for ln in lines] == hashes
        assert lines[1]["prev_hash"] == hashes[0]
        assert log.state_path.read_text().strip() == hashes[-1]
        assert verify_log_chain(log.log_path)

    def test_callers_cannot_inject_chain_fields(self, tmp_path):
        log = AuditLog(tmp_path)
        log.append_event({"event": "x", "prev_hash": "f" * 64, "hash": "e" * 64})
        line = json.loads(log.log_path.read_text())
        assert line["prev_hash"] == GENESIS_HASH
        assert verify_log_chain(log.log_path)

    def test_tokens_are_hashed(self):
        event = build_common(event="e", state="s", token="secret.token.value", user_agent="x" * 500)
        assert "secret.token.value" not in json.dumps(event)
        assert event["token_len"] == len("secret.token.value")
        assert len(event["user_agent"]) == 200


class TestVerify:
    def test_missing_log_is_valid(self, tmp_path):
        assert verify_log_chain(tmp_path / "nope.jsonl")

    def test_edit_breaks_chain(self, tmp_path):
        log = AuditLog(tmp_path)
        for e in _events(3):
            log.append_event(e)

        lines = log.log_path.read_text().splitlines()
        edited = json.loads(lines[1])
        edited["app_origin"] = "https://evil.example"
        lines[1] = json.dumps(edited, sort_keys=True, separators=(",", ":"))
        log.log_path.write_text("\n".join(lines) + "\n")

        assert not verify_log_chain(log.log_path)

    def test_deletion_breaks_chain(self, tmp_path):
        log = AuditLog(tmp_path)
        for e in _events(3):
            log.append_event(e)

        lines = log.log_path.read_text().splitlines()
        log.log_path.write_text("\n".join([lines[0], lines[2]]) + "\n")
        assert not verify_log_chain(log.log_path)

    def test_garbage_line(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text("not json\n")
        assert not verify_log_chain(path)


class TestCli:
    def test_verify_audit_ok(self, tmp_path, capsys):
        log = AuditLog(tmp_path)
        for e in _events(2):
            log.append_event(e)
        assert cli_main(["verify-audit", str(log.log_path)]) == 0
        assert "OK" in capsys.readouterr().out

    def test_verify_audit_detects_stale_state(self, tmp_path):
        log = AuditLog(tmp_path)
        for e in _events(2):
            log.append_event(e)
        log.state_path.write_text("0" * 64 + "\n")
        assert cli_main(["verify-audit", str(log.log_path)]) == 1

    def test_decrypt_backup(self, tmp_path, monkeypatch, capsys):
        import base64

        from authbroker.backup import encrypt_backup_phrase
        from tests.conftest import PHRASE

        path = tmp_path / "backup.b64"
        path.write_text(base64.b64encode(encrypt_backup_phrase(PHRASE, "pw")).decode("ascii"))
        monkeypatch.setattr("getpass.getpass", lambda prompt="": "pw")

        assert cli_main(["decrypt-backup", str(path)]) == 0
        assert capsys.readouterr().out.strip() == PHRASE

        monkeypatch.setattr("getpass.getpass", lambda prompt="": "wrong")
        assert cli_main(["decrypt-backup", str(path)]) == 1
