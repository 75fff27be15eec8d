# authbroker/storage.py
#
# Storage hub client.
#
# A hub stores files under /store/<address>/<filename> for whoever can sign
# its challenge with the key behind <address>, and serves them back under
# <read_url_prefix><address>/<filename>. The broker uses two hubs:
#   - the application hub, to learn the app's read prefix for an app key
#   - the profile hub, to publish rewritten profile documents
import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .keys import address_from_private_key
from .tokens import public_key_hex, sign_token

logger = logging.getLogger(__name__)

PROFILE_FILENAME = "profile.json"


@dataclass(frozen=True)
class HubConfig:
    url_prefix: str
    address: str
    token: str = field(default="", repr=False)
    server: str = ""


@dataclass
class UploadResult:
    data_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.error


def make_hub_auth_token(hub_info: Dict[str, Any], hub_url: str, private_key: str) -> str:
    """
    v1 bearer token: a signed statement over the hub's challenge text.
    """
    challenge = hub_info.get("challenge_text")
    if not challenge:
        raise ValueError("hub_info has no challenge_text")

    payload = {
        "gaiaChallenge": challenge,
        "hubUrl": hub_url,
        "iss": public_key_hex(private_key),
        "salt": secrets.token_hex(16),
    }
    return "v1:" + sign_token(payload, private_key)


class HubClient:
    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def get_hub_info(self, hub_url: str) -> Dict[str, Any]:
        resp = await self.http.get(f"{hub_url.rstrip('/')}/hub_info")
        resp.raise_for_status()
        info = resp.json()
        if not isinstance(info, dict) or not info.get("read_url_prefix"):
            raise ValueError(f"malformed hub_info from {hub_url}")
        return info

    async def connect(self, hub_url: str, private_key: str) -> HubConfig:
        hub_url = hub_url.rstrip("/")
        info = await self.get_hub_info(hub_url)
        return HubConfig(
            url_prefix=str(info["read_url_prefix"]),
            address=address_from_private_key(private_key),
            token=make_hub_auth_token(info, hub_url, private_key),
            server=hub_url,
        )

    async def upload(
        self,
        config: HubConfig,
        filename: str,
        data: bytes | str,
        content_type: str = "application/json",
    ) -> str:
        if isinstance(data, str):
            data = data.encode("utf-8")

        resp = await self.http.post(
            f"{config.server}/store/{config.address}/{filename}",
            content=data,
            headers={"Content-Type": content_type, "Authorization": f"bearer {config.token}"},
        )
        resp.raise_for_status()
        body = resp.json()
        url = body.get("publicURL") if isinstance(body, dict) else None
        if not url:
            raise ValueError(f"hub {config.server} did not return a publicURL")
        return str(url)

    async def upload_profile(self, hub_url: str, profile_json: str, private_key: str) -> str:
        config = await self.connect(hub_url, private_key)
        return await self.upload(config, PROFILE_FILENAME, profile_json)

    async def upload_profile_all(
        self,
        hub_urls: Sequence[str],
        profile_document: Any,
        private_key: str,
    ) -> UploadResult:
        """
        Replicate a profile document to every hub.

        Never raises for per-hub failures; they are joined into .error.
        """
        profile_json = json.dumps(profile_document)
        results = await asyncio.gather(
            *(self.upload_profile(hub, profile_json, private_key) for hub in hub_urls),
            return_exceptions=True,
        )

        out = UploadResult()
        errors = []
        for hub, res in zip(hub_urls, results):
            if isinstance(res, BaseException):
                logger.warning("Profile upload to %s failed: %s", hub, res)
                errors.append(f"{hub}: {res}")
            else:
                out.data_urls.append(res)

        if errors:
            out.error = "; ".join(errors)
        return out
