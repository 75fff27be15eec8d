"""
authbroker/discovery.py

Identity discovery: which identities of a backup phrase can sign in.

Walk owner indices 0, 1, 2, ... and ask the registry which names each owner
address holds. The walk stops at the first address holding no names. Every
named identity then has its profile resolved (concurrently, each lookup on
its own timeout); identities without a resolvable profile are dropped, and
one unnamed "anonymous" identity is appended after the named ones.

Registry lookups always use the canonical (mainnet) address form; the mode
is passed to each call, so discovery can run alongside other handshakes.
"""

import asyncio
import logging
from typing import List

from .errors import TooManyIdentities
from .keys import Keychain
from .models import Identity
from .registry import NameInfo, RegistryClient

logger = logging.getLogger(__name__)

MAX_IDENTITY_INDEX = 65536


async def load_named_identities(keychain: Keychain, registry: RegistryClient) -> List[Identity]:
    """One Identity per (owner index, owned name), up to the first unnamed index."""
    identities: List[Identity] = []
    index = 0

    while True:
        if index > MAX_IDENTITY_INDEX:
            raise TooManyIdentities("Too many names")

        owner = keychain.owner_key(index)
        names = await registry.get_names_owned(owner.address, coerce_mainnet=True)
        if not names:
            return identities

        for name in names:
            identities.append(
                Identity(
                    name=name,
                    id_address=owner.id_address,
                    private_key=owner.private_key,
                    index=index,
                )
            )
        index += 1


def load_unnamed_identity(keychain: Keychain, index: int) -> Identity:
    owner = keychain.owner_key(index)
    return Identity(name="", id_address=owner.id_address, private_key=owner.private_key, index=index)


async def _lookup(registry: RegistryClient, name: str, timeout: float) -> NameInfo:
    return await asyncio.wait_for(registry.lookup_name(name, coerce_mainnet=True), timeout)


async def load_identities(keychain: Keychain, registry: RegistryClient, lookup_timeout: float = 10.0) -> List[Identity]:
    """
    All identities offered on the sign-in page.

    A failed or timed-out profile lookup only drops that identity.
    """
    named = await load_named_identities(keychain, registry)

    results = await asyncio.gather(
        *(_lookup(registry, ident.name, lookup_timeout) for ident in named),
        return_exceptions=True,
    )

    for ident, res in zip(named, results):
        if isinstance(res, BaseException):
            logger.warning("Name lookup for %s failed: %r", ident.name, res)
            continue
        if res.error:
            logger.info("No profile data for %s: %s", ident.name, res.error)
            continue
        ident.profile_url = res.profile_url
        ident.profile = res.profile or {}

    next_index = len(named) + 1
    identities = [ident for ident in named if ident.profile_url]
    identities.append(load_unnamed_identity(keychain, next_index))
    return identities
