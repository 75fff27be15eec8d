"""
authbroker/sign_in.py

GET /signin pipeline: from a selected sign-in link back to the application.

RECEIVED -> ENVELOPE_VERIFIED -> CREDENTIAL_VERIFIED -> STORAGE_CONNECTED
         -> PROFILE_RECONCILED -> DONE, or ERROR.

The credential handed to the application is re-signed by the identity key
with the broker's handshake metadata reduced to the profile URL. The profile
is rewritten only when reconciliation changed it AND the application asked
for the write scope, and never for a client that has already disconnected.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .context import BrokerContext
from .credentials import (
    finalize_credential,
    read_metadata,
    update_query_string_parameter,
    verify_auth_response,
)
from .errors import (
    BadRequest,
    BrokerError,
    StorageConnectFailure,
    StorageUploadFailure,
    VerificationFailure,
)
from .handshake import DisconnectCheck, HandshakeOutcome, SignInState, ensure_connected, run_step, step
from .keys import OwnerKey, resolve_app_private_key, same_address
from .models import CredentialMetadata
from .profiles import make_profile_token, reconcile_profile_apps, wrap_profile_token
from .transit import open_credential

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Unable to process signin request"


async def current_profile(ctx: BrokerContext, name: str) -> Optional[Dict[str, Any]]:
    """
    The identity's profile as the registry serves it right now.

    None for anonymous identities and whenever the lookup fails; the
    reconciliation step then starts from a default profile.
    """
    if not name:
        return None
    try:
        info = await asyncio.wait_for(
            ctx.registry.lookup_name(name, coerce_mainnet=True),
            ctx.settings.HTTP_TIMEOUT_SECONDS,
        )
    except Exception as e:
        # malformed remote data included; CancelledError is not an Exception
        logger.warning("Profile lookup for %s failed: %r", name, e)
        return None
    return info.profile if not info.error else None


def owner_key_for(ctx: BrokerContext, metadata: CredentialMetadata, signer_public_key: str) -> OwnerKey:
    """Re-derive the identity key named in the metadata and check it signed the credential."""
    owner = ctx.keychain.owner_key(metadata.id.index)
    if not same_address(owner.id_address, metadata.id.idAddress):
        raise VerificationFailure("Identity in auth response does not belong to this backup phrase")
    if owner.public_key != signer_public_key:
        raise VerificationFailure("Auth response is not signed by the identity it names")
    return owner


async def handle_sign_in(
    ctx: BrokerContext,
    enc_token: str | None,
    is_disconnected: Optional[DisconnectCheck] = None,
) -> HandshakeOutcome:
    state = SignInState.RECEIVED
    if not enc_token:
        return HandshakeOutcome.failed(ERROR_PREFIX, BadRequest("No encAuthResponse given"), state=state.value)

    settings = ctx.settings
    timeout = settings.STEP_TIMEOUT_SECONDS
    metadata = None

    try:
        with step(VerificationFailure, "Invalid encrypted auth response: not signed by this authenticator"):
            credential = open_credential(enc_token, ctx.transit)
        state = SignInState.ENVELOPE_VERIFIED

        payload = await run_step(
            verify_auth_response(credential, ctx.registry),
            VerificationFailure,
            "Failed to verify auth response",
            timeout,
        )
        metadata = read_metadata(payload)
        with step(VerificationFailure, "Invalid identity in auth response"):
            owner = owner_key_for(ctx, metadata, str(payload["public_keys"][0]))
        state = SignInState.CREDENTIAL_VERIFIED

        await ensure_connected(is_disconnected, "connecting to storage")
        profile = await current_profile(ctx, metadata.id.name)

        with step(VerificationFailure, "Failed to derive app key"):
            info = ctx.keychain.app_key_info(owner.id_address, metadata.appOrigin, owner.index)
            app_private_key = resolve_app_private_key(info, profile, metadata.appOrigin)
            app_token = finalize_credential(payload, owner.private_key, metadata.profileUrl)

        hub_config = await run_step(
            ctx.hubs.connect(settings.APP_HUB_URL, app_private_key),
            StorageConnectFailure,
            "Failed to connect to app storage",
            timeout,
        )
        state = SignInState.STORAGE_CONNECTED

        new_profile, changed = reconcile_profile_apps(profile, metadata.appOrigin, hub_config)
        if changed and settings.WRITE_SCOPE in metadata.scopes:
            await ensure_connected(is_disconnected, "uploading the profile")
            logger.debug("Uploading updated profile for %s", owner.id_address)

            document = wrap_profile_token(make_profile_token(new_profile, owner.private_key))
            result = await run_step(
                ctx.hubs.upload_profile_all([settings.PROFILE_HUB_URL], document, owner.private_key),
                StorageUploadFailure,
                "Failed to upload new profile",
                timeout,
            )
            if not result.ok:
                raise StorageUploadFailure(f"Failed to upload new profile: {result.error}")
        else:
            logger.debug(
                "Not uploading profile for %s (changed=%s, scopes=%s)",
                owner.id_address,
                changed,
                metadata.scopes,
            )
        state = SignInState.PROFILE_RECONCILED

        location = update_query_string_parameter(metadata.redirect_uri, "authResponse", app_token)
        state = SignInState.DONE

    except BrokerError as e:
        logger.error("%s (state=%s): %s", ERROR_PREFIX, state.value, e.message)
        return HandshakeOutcome.failed(
            ERROR_PREFIX,
            e,
            state=SignInState.ERROR.value,
            app_origin=metadata.appOrigin if metadata else None,
            id_address=metadata.id.idAddress if metadata else None,
        )

    logger.info("Signed %s in to %s", owner.id_address, metadata.appOrigin)
    return HandshakeOutcome(
        state=state.value,
        status_code=302,
        location=location,
        app_origin=metadata.appOrigin,
        id_address=owner.id_address,
    )
