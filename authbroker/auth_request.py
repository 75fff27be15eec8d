"""
authbroker/auth_request.py

GET /auth pipeline: from an application's auth request to the sign-in page.

RECEIVED -> REQUEST_VERIFIED -> MANIFEST_FETCHED -> PAGE_RENDERED, or ERROR.

Identity discovery starts as soon as the request arrives and runs while the
request token is verified. One sealed credential is built per identity; each
becomes one link back to GET /signin.
"""

import asyncio
import logging
from typing import Any, Dict, List

import httpx

from .context import BrokerContext
from .credentials import build_credential, update_query_string_parameter, verify_auth_request
from .discovery import load_identities
from .errors import BadRequest, BrokerError, ManifestFetchFailure, VerificationFailure
from .handshake import AuthRequestState, HandshakeOutcome, run_step, step
from .keys import resolve_app_private_key
from .models import AuthRequestPayload, Identity, SignInEntry
from .transit import seal_credential

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Unable to authenticate app request"


async def fetch_app_manifest(http: httpx.AsyncClient, manifest_uri: str) -> Dict[str, Any]:
    resp = await http.get(manifest_uri)
    resp.raise_for_status()
    manifest = resp.json()
    if not isinstance(manifest, dict):
        raise ValueError("app manifest is not a JSON object")
    return manifest


def build_sign_in_entries(
    ctx: BrokerContext,
    identities: List[Identity],
    request: AuthRequestPayload,
) -> List[SignInEntry]:
    entries = []
    for identity in identities:
        info = ctx.keychain.app_key_info(identity.id_address, request.domain_name, identity.index)
        app_private_key = resolve_app_private_key(info, identity.profile, request.domain_name)

        credential = build_credential(
            identity,
            request,
            app_private_key,
            ctx.settings.APP_HUB_URL,
            ctx.settings.REGISTRY_API_URL,
        )
        sealed = seal_credential(credential, ctx.transit)

        entries.append(
            SignInEntry(
                name=identity.name,
                id_address=identity.id_address,
                url=update_query_string_parameter(ctx.signin_url, "encAuthResponse", sealed),
            )
        )
    return entries


async def handle_auth(ctx: BrokerContext, auth_token: str | None) -> HandshakeOutcome:
    state = AuthRequestState.RECEIVED
    if not auth_token:
        return HandshakeOutcome.failed(ERROR_PREFIX, BadRequest("No authRequest given"), state=state.value)

    timeout = ctx.settings.STEP_TIMEOUT_SECONDS
    request = None

    discovery = asyncio.ensure_future(
        run_step(
            load_identities(ctx.keychain, ctx.registry, ctx.settings.HTTP_TIMEOUT_SECONDS),
            BrokerError,
            "Failed to load identities",
            timeout,
        )
    )
    try:
        with step(VerificationFailure, "Invalid authentication token"):
            request = verify_auth_request(auth_token)
        identities = await discovery
        state = AuthRequestState.REQUEST_VERIFIED

        await run_step(
            fetch_app_manifest(ctx.http, request.manifest_uri),
            ManifestFetchFailure,
            "Failed to fetch app manifest",
            timeout,
        )
        state = AuthRequestState.MANIFEST_FETCHED

        with step(BrokerError, "Failed to build sign-in credentials"):
            entries = build_sign_in_entries(ctx, identities, request)
        state = AuthRequestState.PAGE_RENDERED

    except BrokerError as e:
        logger.error("%s (state=%s): %s", ERROR_PREFIX, state.value, e.message)
        return HandshakeOutcome.failed(
            ERROR_PREFIX,
            e,
            state=AuthRequestState.ERROR.value,
            app_origin=request.domain_name if request else None,
        )
    finally:
        if not discovery.done():
            discovery.cancel()
        elif not discovery.cancelled():
            discovery.exception()

    logger.info("Rendering %d identities for %s", len(entries), request.domain_name)
    return HandshakeOutcome(
        state=state.value,
        status_code=200,
        entries=entries,
        app_origin=request.domain_name,
    )
