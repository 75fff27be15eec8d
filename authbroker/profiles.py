"""
authbroker/profiles.py

Profile documents: reconciliation of the per-application storage pointers,
and the signed token format profiles are published in.

A profile document looks like:

    {
      "type": "@Person",
      "account": [...],
      "apps": { "<app origin>": "<storage read URL prefix>" }
    }

Invariant kept by reconcile_profile_apps():
    apps[origin] starts with url_prefix + address + "/"
of the identity's current storage config for that application.
"""

import copy
import logging
import secrets
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .keys import address_from_public_key, same_address
from .storage import HubConfig
from .tokens import decode_token, public_key_hex, sign_token, verify_token

logger = logging.getLogger(__name__)

PROFILE_TYPE = "@Person"
PROFILE_TOKEN_LIFETIME_SECONDS = 365 * 24 * 3600


def default_profile() -> Dict[str, Any]:
    return {"type": PROFILE_TYPE, "account": [], "apps": {}}


def storage_prefix(hub_config: HubConfig) -> str:
    return f"{hub_config.url_prefix}{hub_config.address}/"


# -----------------------------------------------------------------------------
# Reconciliation
# -----------------------------------------------------------------------------
def reconcile_profile_apps(
    profile: Optional[Dict[str, Any]],
    app_origin: str,
    hub_config: HubConfig,
) -> Tuple[Dict[str, Any], bool]:
    """
    Make sure profile["apps"][app_origin] points at the app's storage.

    The input is not mutated. Returns (profile, changed); running this again
    on its own output always yields changed=False.
    """
    changed = False

    if profile is None:
        logger.debug("Instantiating profile for %s", app_origin)
        profile = default_profile()
        changed = True
    else:
        profile = copy.deepcopy(profile)

    if profile.get("apps") is None:
        logger.debug("Adding multi-reader storage links to profile")
        profile["apps"] = {}
        changed = True

    expected = storage_prefix(hub_config)
    current = profile["apps"].get(app_origin)

    if not current:
        logger.debug("Setting storage read URL %s for %s", expected, app_origin)
        profile["apps"][app_origin] = expected
        changed = True
    elif not str(current).startswith(expected):
        logger.debug("Overriding storage read URL for %s from %s to %s", app_origin, current, expected)
        profile["apps"][app_origin] = expected
        changed = True

    return profile, changed


def storage_address_from_profile(profile: Optional[Dict[str, Any]], app_origin: str) -> str:
    """
    Storage address already recorded in the profile for app_origin.

    The read URL has the form <url_prefix><address>/..., so the address is
    the last path segment of the prefix. Raises LookupError when the profile
    has no usable entry.
    """
    apps = (profile or {}).get("apps") or {}
    url = apps.get(app_origin)
    if not url:
        raise LookupError(f"profile has no storage entry for {app_origin}")

    segments = [s for s in urlparse(str(url)).path.split("/") if s]
    if not segments:
        raise LookupError(f"cannot find a storage address in {url}")
    return segments[-1]


# -----------------------------------------------------------------------------
# Profile tokens
# -----------------------------------------------------------------------------
def make_profile_token(profile: Dict[str, Any], private_key: str, lifetime: int = PROFILE_TOKEN_LIFETIME_SECONDS) -> str:
    pubkey = public_key_hex(private_key)
    now = int(time.time())
    payload = {
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + lifetime,
        "subject": {"publicKey": pubkey},
        "issuer": {"publicKey": pubkey},
        "claim": profile,
        "salt": secrets.token_hex(16),
    }
    return sign_token(payload, private_key)


def wrap_profile_token(token: str) -> List[Dict[str, Any]]:
    """The JSON document a profile is stored as: a list of token records."""
    return [{"token": token, "decodedToken": decode_token(token)}]


def extract_profile(token: str, owner_address: Optional[str] = None) -> Dict[str, Any]:
    """
    Verify a profile token and return its claim.

    When owner_address is given, the issuing key must hash to it.
    """
    payload = decode_token(token)["payload"]
    issuer = payload.get("issuer")
    if not isinstance(issuer, dict):
        raise ValueError("profile token has no issuer")
    issuer_key = issuer.get("publicKey")
    if not issuer_key or not isinstance(issuer_key, str):
        raise ValueError("profile token has no issuer public key")

    verify_token(token, issuer_key)

    if owner_address is not None:
        signer = address_from_public_key(bytes.fromhex(issuer_key))
        if not same_address(signer, owner_address):
            raise ValueError("profile token is not signed by the name owner")

    exp = payload.get("exp")
    if exp is not None and (not isinstance(exp, (int, float)) or exp < time.time()):
        raise ValueError("profile token expired")

    claim = payload.get("claim")
    if not isinstance(claim, dict):
        raise ValueError("profile token carries no profile")
    return claim
