# authbroker/context.py
#
# Process-wide state, created once by the application factory and handed to
# the handlers through app.state:
#
#   - settings  : validated configuration
#   - keychain  : keys of the backup phrase (read-only)
#   - transit   : transit keypair, generated once per process (read-only)
#   - http      : the shared outbound httpx client (closed on shutdown)
#   - registry  : name registry client
#   - hubs      : storage hub client
#   - audit     : hash-chained handshake log, or None when disabled
from dataclasses import dataclass
from typing import Optional

import httpx

from .audit import AuditLog
from .config import Settings, load_backup_phrase
from .keys import Keychain, get_network
from .registry import RegistryClient
from .storage import HubClient
from .transit import TransitKeyPair


@dataclass
class BrokerContext:
    settings: Settings
    keychain: Keychain
    transit: TransitKeyPair
    http: httpx.AsyncClient
    registry: RegistryClient
    hubs: HubClient
    audit: Optional[AuditLog] = None

    @classmethod
    def create(
        cls,
        settings: Settings,
        backup_phrase: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> "BrokerContext":
        phrase = backup_phrase if backup_phrase is not None else load_backup_phrase(settings)
        http = http or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

        return cls(
            settings=settings,
            keychain=Keychain(phrase, get_network(settings.NETWORK)),
            transit=TransitKeyPair.generate(),
            http=http,
            registry=RegistryClient(http, settings.REGISTRY_API_URL),
            hubs=HubClient(http),
            audit=AuditLog(settings.AUDIT_DIR) if settings.AUDIT_ENABLED else None,
        )

    @property
    def signin_url(self) -> str:
        return f"http://localhost:{self.settings.PORT}/signin"

    async def aclose(self) -> None:
        await self.http.aclose()
