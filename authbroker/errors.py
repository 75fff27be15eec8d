# authbroker/errors.py
#
# Failure taxonomy for the broker. Every handshake step raises one of these
# with the most specific message it has; the owning pipeline catches
# BrokerError once, at its end, and turns it into a JSON error response.


class BrokerError(Exception):
    """Base class for failures that may reach the HTTP boundary."""

    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class BadRequest(BrokerError):
    """Missing or malformed input token."""


class VerificationFailure(BrokerError):
    """Signature or claims did not verify."""


class ManifestFetchFailure(BrokerError):
    pass


class StorageConnectFailure(BrokerError):
    pass


class StorageUploadFailure(BrokerError):
    # storage-layer fault, not a forged handshake
    status_code = 502


class AuthenticationFailure(BrokerError):
    """Wrong password for an encrypted backup phrase."""


class InvalidPlaintext(AuthenticationFailure):
    """Backup phrase decrypted, but the result is not a valid mnemonic."""


class TooManyIdentities(BrokerError):
    pass


class ClientDisconnected(BrokerError):
    """The browser went away mid-handshake; nothing more is done for it."""
