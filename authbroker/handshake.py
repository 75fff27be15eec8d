# authbroker/handshake.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Both handshake pipelines (GET /auth, GET /signin) are explicit, sequential
# state machines. Each step either advances the state or raises a BrokerError
# carrying the most specific message available for that step; the pipeline
# catches BrokerError exactly once, at its end, and returns a HandshakeOutcome.
#
#   auth request : RECEIVED -> REQUEST_VERIFIED -> MANIFEST_FETCHED
#                  -> PAGE_RENDERED                       (or ERROR)
#   sign-in      : RECEIVED -> ENVELOPE_VERIFIED -> CREDENTIAL_VERIFIED
#                  -> STORAGE_CONNECTED -> PROFILE_RECONCILED -> DONE
#                                                         (or ERROR)
#
# Network-bound steps run under run_step(), which applies a timeout and maps
# anything that is not already a BrokerError to the step's own error class.
# -----------------------------------------------------------------------------

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterator, List, Optional, Type, TypeVar

from .errors import BrokerError, ClientDisconnected
from .models import SignInEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DisconnectCheck = Callable[[], Awaitable[bool]]


class AuthRequestState(str, Enum):
    RECEIVED = "received"
    REQUEST_VERIFIED = "request_verified"
    MANIFEST_FETCHED = "manifest_fetched"
    PAGE_RENDERED = "page_rendered"
    ERROR = "error"


class SignInState(str, Enum):
    RECEIVED = "received"
    ENVELOPE_VERIFIED = "envelope_verified"
    CREDENTIAL_VERIFIED = "credential_verified"
    STORAGE_CONNECTED = "storage_connected"
    PROFILE_RECONCILED = "profile_reconciled"
    DONE = "done"
    ERROR = "error"


@dataclass
class HandshakeOutcome:
    """
    Terminal result of one pipeline run.

    Exactly one of entries / location / error is meaningful, depending on
    the terminal state.
    """

    state: str
    status_code: int = 200
    entries: List[SignInEntry] = field(default_factory=list)
    location: Optional[str] = None
    error: Optional[str] = None
    # for the audit log only
    app_origin: Optional[str] = None
    id_address: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, prefix: str, exc: BrokerError, state: str = "error", **extra) -> "HandshakeOutcome":
        return cls(
            state=state,
            status_code=exc.status_code,
            error=f"{prefix}: {exc.message}",
            **extra,
        )


async def run_step(
    awaitable: Awaitable[T],
    error: Type[BrokerError],
    message: str,
    timeout: Optional[float] = None,
) -> T:
    """
    Await one pipeline step.

    A BrokerError raised inside keeps its own (more specific) message; any
    other failure, including a timeout, becomes error(message).
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except BrokerError:
        raise
    except asyncio.TimeoutError:
        raise error(f"{message} (timed out)") from None
    except Exception as e:
        logger.warning("%s: %r", message, e)
        raise error(message) from e


@contextmanager
def step(error: Type[BrokerError], message: str) -> Iterator[None]:
    """Synchronous counterpart of run_step()."""
    try:
        yield
    except BrokerError:
        raise
    except Exception as e:
        logger.warning("%s: %r", message, e)
        raise error(message) from e


async def ensure_connected(is_disconnected: Optional[DisconnectCheck], doing: str) -> None:
    if is_disconnected is not None and await is_disconnected():
        raise ClientDisconnected(f"client disconnected before {doing}")
