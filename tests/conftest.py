"""
Shared pytest fixtures for the auth broker tests.

Outbound services (name registry, storage hub, application) are served by an
in-memory FakeBackend behind httpx.MockTransport.
"""

import json
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from authbroker.config import Settings
from authbroker.context import BrokerContext
from authbroker.keys import Keychain, address_from_public_key, get_network, strip_id_prefix
from authbroker.main import create_app
from authbroker.profiles import make_profile_token, wrap_profile_token
from authbroker.tokens import CURVE, make_did_from_address, private_key_hex, public_key_hex, sign_token

PHRASE = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"

REGISTRY_URL = "https://registry.test"
HUB_URL = "https://hub.test"
READ_PREFIX = "https://gaia.test/"
APP_ORIGIN = "https://app.example"


class FakeBackend:
    """Registry + storage hub + application, keyed by URL."""

    def __init__(self):
        self.names_by_address: Dict[str, List[str]] = {}
        self.name_records: Dict[str, Dict[str, Any]] = {}
        self.files: Dict[str, Any] = {}
        self.uploads: List[Dict[str, Any]] = []
        self.manifest: Optional[Dict[str, Any]] = {"name": "Example App", "start_url": APP_ORIGIN}
        self.requests: List[httpx.Request] = []
        self.fail_uploads = False
        self.fail_hub_info = False
        self.registry_status: Optional[int] = None

    # -- setup helpers --------------------------------------------------------
    def register_name(self, name: str, owner_key, profile: Optional[Dict[str, Any]] = None) -> str:
        """Give owner_key the name; publish its profile. Returns the profile URL."""
        address = strip_id_prefix(owner_key.id_address)
        self.names_by_address.setdefault(address, []).append(name)

        profile_url = f"{READ_PREFIX}{address}/profile.json"
        self.name_records[name] = {
            "address": address,
            "zonefile": f'$ORIGIN {name}\n$TTL 3600\n_http._tcp IN URI 10 1 "{profile_url}"\n',
        }
        if profile is not None:
            self.files[profile_url] = wrap_profile_token(make_profile_token(profile, owner_key.private_key))
        return profile_url

    # -- transport ------------------------------------------------------------
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        path = request.url.path

        if url.startswith(REGISTRY_URL) and self.registry_status is not None:
            return httpx.Response(self.registry_status, json={"error": "registry unavailable"})

        if url.startswith(REGISTRY_URL + "/v1/addresses/bitcoin/"):
            address = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"names": self.names_by_address.get(address, [])})

        if url.startswith(REGISTRY_URL + "/v1/names/"):
            record = self.name_records.get(path.rsplit("/", 1)[-1])
            if record is None:
                return httpx.Response(404, json={"error": "name not found"})
            return httpx.Response(200, json=record)

        if url == HUB_URL + "/hub_info":
            if self.fail_hub_info:
                return httpx.Response(500)
            return httpx.Response(200, json={"read_url_prefix": READ_PREFIX, "challenge_text": '["gaiahub","2017"]'})

        if url.startswith(HUB_URL + "/store/") and request.method == "POST":
            if self.fail_uploads:
                return httpx.Response(503, json={"error": "hub unavailable"})
            _, _, address, filename = path.split("/", 3)
            body = json.loads(request.content.decode("utf-8"))
            public_url = f"{READ_PREFIX}{address}/{filename}"
            self.uploads.append({"url": public_url, "auth": request.headers.get("authorization"), "body": body})
            self.files[public_url] = body
            return httpx.Response(202, json={"publicURL": public_url})

        if url.startswith(READ_PREFIX):
            if url not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, json=self.files[url])

        if url == APP_ORIGIN + "/manifest.json":
            if self.manifest is None:
                return httpx.Response(500)
            return httpx.Response(200, json=self.manifest)

        return httpx.Response(404)


class AppKeys:
    """The requesting application's transit key."""

    def __init__(self):
        self.private_key = private_key_hex(ec.generate_private_key(CURVE))
        self.public_key = public_key_hex(self.private_key)

    def auth_request(self, scopes=None, origin: str = APP_ORIGIN, **overrides) -> str:
        now = int(time.time())
        payload = {
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + 3600,
            "iss": make_did_from_address(address_from_public_key(bytes.fromhex(self.public_key))),
            "public_keys": [self.public_key],
            "domain_name": origin,
            "manifest_uri": f"{origin}/manifest.json",
            "redirect_uri": f"{origin}/callback",
            "scopes": ["store_write"] if scopes is None else scopes,
            "version": "1.3.1",
        }
        payload.update(overrides)
        return sign_token(payload, self.private_key)


@pytest.fixture(scope="session")
def keychain() -> Keychain:
    return Keychain(PHRASE, get_network("mainnet"))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def app_keys() -> AppKeys:
    return AppKeys()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        PORT=8888,
        NETWORK="mainnet",
        REGISTRY_API_URL=REGISTRY_URL,
        APP_HUB_URL=HUB_URL,
        PROFILE_HUB_URL=HUB_URL,
        BACKUP_PHRASE=PHRASE,
        AUDIT_ENABLED=True,
        AUDIT_DIR=str(tmp_path / "audit"),
    )


@pytest.fixture
async def broker(settings, backend):
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    ctx = BrokerContext.create(settings, backup_phrase=PHRASE, http=http)
    yield ctx
    await ctx.aclose()


@pytest.fixture
async def client(broker):
    app = create_app(broker)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://localhost:8888",
    ) as c:
        yield c
