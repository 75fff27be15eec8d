# authbroker/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is thin orchestration glue:
#   - It wires the two HTTP endpoints to the handshake pipelines.
#   - It MUST NOT implement crypto itself (keys.py, tokens.py, transit.py).
#   - It holds no per-request state; process-wide state lives in one
#     BrokerContext created by the factory and stored on app.state.
#
# Key modules / responsibilities:
#   - config.py       : environment-driven settings, seed loading
#   - context.py      : process-wide state (transit keypair, clients)
#   - auth_request.py : GET /auth pipeline (request -> sign-in page)
#   - sign_in.py      : GET /signin pipeline (selected link -> redirect)
#   - audit.py        : append-only handshake audit log
#
# Every pipeline returns a HandshakeOutcome; this module only turns it into
# an HTTP response (200 HTML, 302 redirect, or JSON {error}) and records it
# in the audit log.
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .audit import EVENT_HANDSHAKE_FAILED, EVENT_REQUEST_ISSUED, EVENT_SIGNIN_APPROVED, build_common
from .auth_request import ERROR_PREFIX as AUTH_ERROR_PREFIX
from .auth_request import handle_auth
from .config import Settings
from .context import BrokerContext
from .handshake import HandshakeOutcome
from .sign_in import ERROR_PREFIX as SIGNIN_ERROR_PREFIX
from .sign_in import handle_sign_in

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _error_response(outcome: HandshakeOutcome) -> JSONResponse:
    return JSONResponse({"error": outcome.error}, status_code=outcome.status_code)


def _audit(ctx: BrokerContext, request: Request, event: str, outcome: HandshakeOutcome, token: Optional[str]):
    if ctx.audit is None:
        return
    ctx.audit.record(
        build_common(
            event=event if outcome.ok else EVENT_HANDSHAKE_FAILED,
            state=outcome.state,
            app_origin=outcome.app_origin,
            id_address=outcome.id_address,
            token=token,
            error=outcome.error,
            request_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    )


async def _guarded(pipeline, prefix: str) -> HandshakeOutcome:
    """Run a pipeline; anything it did not classify becomes a generic 500."""
    try:
        return await pipeline
    except Exception:
        logger.exception("%s: unexpected failure", prefix)
        return HandshakeOutcome(state="error", status_code=500, error=f"{prefix}: internal error")


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(context: Optional[BrokerContext] = None) -> FastAPI:
    """
    Build the broker application.

    Without a context, settings are read from the environment and the seed
    is loaded once here; the transit keypair is generated once per app.
    """
    ctx = context or BrokerContext.create(Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Auth broker ready on port %s (network=%s)", ctx.settings.PORT, ctx.settings.NETWORK)
        yield
        await ctx.aclose()

    app = FastAPI(title="Local Auth Broker", version="0.1.0", lifespan=lifespan)
    app.state.broker = ctx

    @app.get("/auth")
    async def auth(request: Request, authRequest: Optional[str] = None):
        ctx: BrokerContext = request.app.state.broker
        outcome = await _guarded(handle_auth(ctx, authRequest), AUTH_ERROR_PREFIX)
        _audit(ctx, request, EVENT_REQUEST_ISSUED, outcome, authRequest)

        if not outcome.ok:
            return _error_response(outcome)

        return templates.TemplateResponse(
            request,
            "signin.html",
            {
                "entries": outcome.entries,
                "app_origin": outcome.app_origin,
            },
        )

    @app.get("/signin")
    async def signin(request: Request, encAuthResponse: Optional[str] = None):
        ctx: BrokerContext = request.app.state.broker
        outcome = await _guarded(
            handle_sign_in(ctx, encAuthResponse, request.is_disconnected),
            SIGNIN_ERROR_PREFIX,
        )
        _audit(ctx, request, EVENT_SIGNIN_APPROVED, outcome, encAuthResponse)

        if not outcome.ok:
            return _error_response(outcome)
        return RedirectResponse(outcome.location, status_code=302)

    return app
