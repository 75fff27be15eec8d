"""
Tests for the step helpers shared by both handshake pipelines.
"""

import asyncio

import pytest

from authbroker.errors import (
    BrokerError,
    ClientDisconnected,
    StorageConnectFailure,
    StorageUploadFailure,
    VerificationFailure,
)
from authbroker.handshake import HandshakeOutcome, ensure_connected, run_step, step


async def _value(v):
    return v


async def _raise(exc):
    raise exc


class TestRunStep:
    async def test_passes_value_through(self):
        assert await run_step(_value(3), StorageConnectFailure, "connect", 1.0) == 3

    async def test_foreign_error_gets_step_message(self):
        with pytest.raises(StorageConnectFailure) as exc_info:
            await run_step(_raise(KeyError("secret detail")), StorageConnectFailure, "Failed to connect", 1.0)
        assert exc_info.value.message == "Failed to connect"

    async def test_broker_error_keeps_its_message(self):
        with pytest.raises(VerificationFailure, match="issuer does not match"):
            await run_step(_raise(VerificationFailure("issuer does not match")), StorageConnectFailure, "x", 1.0)

    async def test_timeout(self):
        with pytest.raises(StorageConnectFailure) as exc_info:
            await run_step(asyncio.sleep(5), StorageConnectFailure, "Failed to connect to app storage", 0.01)
        assert exc_info.value.message == "Failed to connect to app storage (timed out)"
        assert exc_info.value.status_code == 400

    async def test_upload_error_status(self):
        with pytest.raises(StorageUploadFailure) as exc_info:
            await run_step(_raise(OSError("reset")), StorageUploadFailure, "Failed to upload new profile", 1.0)
        assert exc_info.value.status_code == 502


class TestStep:
    def test_wraps_foreign_error(self):
        with pytest.raises(VerificationFailure, match="^Invalid identity$"):
            with step(VerificationFailure, "Invalid identity"):
                raise AttributeError("'int' object has no attribute 'upper'")

    def test_keeps_broker_error(self):
        with pytest.raises(BrokerError, match="specific"):
            with step(VerificationFailure, "generic"):
                raise BrokerError("specific")


class TestEnsureConnected:
    async def test_no_check(self):
        await ensure_connected(None, "anything")

    async def test_connected(self):
        async def here():
            return False

        await ensure_connected(here, "uploading")

    async def test_gone(self):
        async def gone():
            return True

        with pytest.raises(ClientDisconnected, match="before uploading"):
            await ensure_connected(gone, "uploading")


class TestOutcome:
    def test_failed_carries_prefix_and_status(self):
        outcome = HandshakeOutcome.failed("Unable to process signin request", StorageUploadFailure("hub down"))
        assert not outcome.ok
        assert outcome.state == "error"
        assert outcome.status_code == 502
        assert outcome.error == "Unable to process signin request: hub down"
