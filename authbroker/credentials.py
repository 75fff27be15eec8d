"""
authbroker/credentials.py

Construction and verification of the tokens exchanged with applications.

- auth request  : signed by the application, names its origin, redirect
                  target, requested scopes and its transit public key
- auth response : signed by the chosen identity; carries the application
                  private key encrypted to the application's transit key
- association   : signed by the identity, binds the app key to it

Claims are checked the same way an application would check them: signature
against public_keys[0], issuer DID bound to that key, expiry and issuance
time, and (auth responses) ownership of the claimed username.
"""

import json
import secrets
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from cryptography.exceptions import InvalidSignature
from pydantic import ValidationError

from .errors import VerificationFailure
from .keys import address_from_public_key, same_address
from .models import AuthRequestPayload, CredentialMetadata, Identity
from .registry import RegistryClient
from .tokens import (
    address_from_did,
    decode_token,
    make_did_from_address,
    public_key_hex,
    sign_token,
    verify_token,
)
from .transit import encrypt_content

AUTH_RESPONSE_VERSION = "1.3.1"
AUTH_RESPONSE_LIFETIME_SECONDS = 30 * 24 * 3600
ASSOCIATION_LIFETIME_SECONDS = 365 * 24 * 3600

# tolerated clock skew for iat checks
CLOCK_SKEW_SECONDS = 60


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def update_query_string_parameter(uri: str, key: str, value: str) -> str:
    """Set (or replace) one query parameter of uri."""
    p = urlparse(uri)
    query = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urlunparse(p._replace(query=urlencode(query)))


def _origin(url: str) -> tuple[str, str]:
    p = urlparse(url if "://" in url else f"http://{url}")
    return p.scheme.lower(), (p.netloc or "").lower()


def _check_signed_claims(token: str, payload: Dict[str, Any], label: str) -> str:
    """Common checks; returns the verified signer public key."""
    keys = payload.get("public_keys") or []
    if len(keys) != 1:
        raise VerificationFailure(f"Invalid {label}: expected exactly one public key")
    pubkey = str(keys[0])

    try:
        verify_token(token, pubkey)
    except (ValueError, InvalidSignature):
        raise VerificationFailure(f"Invalid {label}: could not verify") from None

    try:
        issuer = address_from_did(payload.get("iss", ""))
    except ValueError:
        raise VerificationFailure(f"Invalid {label}: bad issuer") from None
    if not same_address(issuer, address_from_public_key(bytes.fromhex(pubkey))):
        raise VerificationFailure(f"Invalid {label}: issuer does not match public key")

    now = time.time()
    exp = payload.get("exp")
    if exp is not None and float(exp) < now:
        raise VerificationFailure(f"Invalid {label}: expired")
    iat = payload.get("iat")
    if iat is not None and float(iat) > now + CLOCK_SKEW_SECONDS:
        raise VerificationFailure(f"Invalid {label}: issued in the future")

    return pubkey


# -----------------------------------------------------------------------------
# Auth requests
# -----------------------------------------------------------------------------
def verify_auth_request(token: str) -> AuthRequestPayload:
    try:
        payload = decode_token(token)["payload"]
    except ValueError:
        raise VerificationFailure("Invalid authentication token: no payload") from None

    try:
        request = AuthRequestPayload.model_validate(payload)
    except ValidationError as e:
        raise VerificationFailure(f"Invalid authentication token: {e.error_count()} malformed claim(s)") from None

    _check_signed_claims(token, payload, "authentication token")

    domain = _origin(request.domain_name)
    if _origin(request.manifest_uri) != domain:
        raise VerificationFailure("Invalid authentication token: manifest URI is not on the app's origin")
    if _origin(request.redirect_uri) != domain:
        raise VerificationFailure("Invalid authentication token: redirect URI is not on the app's origin")

    return request


# -----------------------------------------------------------------------------
# Auth responses
# -----------------------------------------------------------------------------
def make_association_token(app_private_key: str, identity_private_key: str) -> str:
    now = int(time.time())
    payload = {
        "childToAssociate": public_key_hex(app_private_key),
        "iss": public_key_hex(identity_private_key),
        "iat": now,
        "exp": now + ASSOCIATION_LIFETIME_SECONDS,
        "salt": secrets.token_hex(16),
    }
    return sign_token(payload, identity_private_key)


def make_auth_response(
    identity: Identity,
    app_private_key: str,
    transit_public_key: str,
    hub_url: str,
    api_url: str,
    metadata: Optional[Dict[str, Any]] = None,
    association_token: Optional[str] = None,
    lifetime: int = AUTH_RESPONSE_LIFETIME_SECONDS,
) -> Dict[str, Any]:
    """Auth response claims for identity (unsigned)."""
    pubkey = public_key_hex(identity.private_key)
    now = int(time.time())
    encrypted_app_key = json.dumps(encrypt_content(app_private_key, transit_public_key))

    return {
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + lifetime,
        "iss": make_did_from_address(address_from_public_key(bytes.fromhex(pubkey))),
        "private_key": encrypted_app_key.encode("utf-8").hex(),
        "public_keys": [pubkey],
        "profile": None,
        "username": identity.name or None,
        "core_token": None,
        "email": None,
        "profile_url": identity.profile_url or None,
        "hubUrl": hub_url,
        "blockstackAPIUrl": api_url,
        "associationToken": association_token,
        "version": AUTH_RESPONSE_VERSION,
        "metadata": metadata or {},
    }


def build_credential(
    identity: Identity,
    request: AuthRequestPayload,
    app_private_key: str,
    hub_url: str,
    api_url: str,
) -> str:
    """
    The inner credential for one identity: an auth response whose metadata
    carries the handshake state, salted so no two are alike.
    """
    metadata = CredentialMetadata(
        id=identity.reference(),
        profileUrl=identity.profile_url,
        appOrigin=request.domain_name,
        redirect_uri=request.redirect_uri,
        scopes=request.scopes,
        salt=secrets.token_hex(16),
    )
    payload = make_auth_response(
        identity,
        app_private_key,
        request.transit_public_key,
        hub_url,
        api_url,
        metadata=metadata.model_dump(),
        association_token=make_association_token(app_private_key, identity.private_key),
    )
    return sign_token(payload, identity.private_key)


def finalize_credential(payload: Dict[str, Any], identity_private_key: str, profile_url: str) -> str:
    """Re-sign the credential with the broker's bookkeeping removed."""
    out = dict(payload)
    out["metadata"] = {"profileUrl": profile_url}
    return sign_token(out, identity_private_key)


async def verify_auth_response(token: str, registry: RegistryClient) -> Dict[str, Any]:
    try:
        payload = decode_token(token)["payload"]
    except ValueError:
        raise VerificationFailure("Invalid auth response: no payload") from None

    pubkey = _check_signed_claims(token, payload, "auth response")

    username = payload.get("username")
    if username:
        try:
            owner = await registry.get_name_owner(str(username), coerce_mainnet=True)
        except Exception:
            raise VerificationFailure(f"Invalid auth response: cannot look up owner of {username}") from None
        if not same_address(owner, address_from_public_key(bytes.fromhex(pubkey))):
            raise VerificationFailure(f"Invalid auth response: {username} is not owned by the signer")

    return payload


def read_metadata(payload: Dict[str, Any]) -> CredentialMetadata:
    try:
        return CredentialMetadata.model_validate(payload.get("metadata") or {})
    except ValidationError:
        raise VerificationFailure("Invalid auth response: missing handshake metadata") from None
