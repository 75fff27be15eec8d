# authbroker/registry.py
#
# Name registry client.
#
# The registry maps human-readable names to owner addresses and zone files;
# a zone file's URI record points at the signed profile document.
#
# Address normalization ("coerce mainnet") is a per-call argument, not a
# process-wide switch, so concurrent handshakes never see each other's mode.
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .keys import strip_id_prefix, to_mainnet_address
from .profiles import extract_profile

logger = logging.getLogger(__name__)

_ZONEFILE_URI_RE = re.compile(r'\bURI\s+\d+\s+\d+\s+"([^"]+)"')


@dataclass
class NameInfo:
    name: str
    address: str = ""
    profile: Optional[Dict[str, Any]] = None
    profile_url: str = ""
    zonefile: str = field(default="", repr=False)
    error: Optional[str] = None


def profile_url_from_zonefile(zonefile: str) -> str:
    """First URI record of a zone file, or '' when there is none."""
    m = _ZONEFILE_URI_RE.search(zonefile or "")
    return m.group(1) if m else ""


class RegistryClient:
    def __init__(self, http: httpx.AsyncClient, api_url: str):
        self.http = http
        self.api_url = api_url.rstrip("/")

    @property
    def name_lookup_url(self) -> str:
        return f"{self.api_url}/v1/names/"

    async def get_names_owned(self, address: str, *, coerce_mainnet: bool = False) -> List[str]:
        address = strip_id_prefix(address)
        if coerce_mainnet:
            address = to_mainnet_address(address)

        resp = await self.http.get(f"{self.api_url}/v1/addresses/bitcoin/{address}")
        resp.raise_for_status()
        names = resp.json().get("names", [])
        if not isinstance(names, list):
            raise ValueError(f"registry returned malformed names for {address}")
        return [str(n) for n in names]

    async def get_name_record(self, name: str) -> Dict[str, Any]:
        if not name:
            raise ValueError("empty name")
        resp = await self.http.get(f"{self.name_lookup_url}{name}")
        resp.raise_for_status()
        record = resp.json()
        if not isinstance(record, dict):
            raise ValueError(f"registry returned a malformed record for {name}")
        return record

    async def get_name_owner(self, name: str, *, coerce_mainnet: bool = False) -> str:
        owner = str((await self.get_name_record(name)).get("address") or "")
        if not owner:
            raise LookupError(f"name {name} has no owner")
        return to_mainnet_address(owner) if coerce_mainnet else owner

    async def fetch_profile(self, profile_url: str, owner_address: str) -> Dict[str, Any]:
        resp = await self.http.get(profile_url)
        resp.raise_for_status()
        records = resp.json()
        if isinstance(records, dict):
            records = [records]
        if not isinstance(records, list) or not records or not isinstance(records[0], dict) or "token" not in records[0]:
            raise ValueError(f"no profile token at {profile_url}")
        return extract_profile(records[0]["token"], owner_address)

    async def lookup_name(self, name: str, *, coerce_mainnet: bool = False) -> NameInfo:
        """
        Resolve a name to its profile.

        Registry-level failures propagate; a name without zone file or profile
        comes back with .error set.
        """
        record = await self.get_name_record(name)
        owner = str(record.get("address") or "")
        if owner and coerce_mainnet:
            owner = to_mainnet_address(owner)

        info = NameInfo(name=name, address=owner, zonefile=str(record.get("zonefile") or ""))
        info.profile_url = profile_url_from_zonefile(info.zonefile)
        if not info.profile_url:
            info.error = f"no profile URL in zone file of {name}"
            return info

        try:
            info.profile = await self.fetch_profile(info.profile_url, owner)
        except (httpx.HTTPError, ValueError) as e:
            logger.info("Profile for %s unavailable: %s", name, e)
            info.error = f"profile unavailable: {e}"
        return info
