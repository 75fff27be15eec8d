import base64
import logging
from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings

from .backup import decrypt_backup_phrase
from .keys import NETWORKS

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    HOST: str = "127.0.0.1"
    PORT: int = 8888

    # mainnet | testnet | regtest
    NETWORK: str = "mainnet"

    REGISTRY_API_URL: str = "https://core.blockstack.org"
    APP_HUB_URL: str = "https://hub.blockstack.org"
    PROFILE_HUB_URL: str = "https://hub.blockstack.org"

    # seed sources; BACKUP_PHRASE wins
    BACKUP_PHRASE: str = ""
    ENCRYPTED_BACKUP_PATH: str = ""
    BACKUP_PASSWORD: str = ""

    HTTP_TIMEOUT_SECONDS: float = 10.0
    STEP_TIMEOUT_SECONDS: float = 30.0

    # scope that allows the broker to rewrite the profile
    WRITE_SCOPE: str = "store_write"

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "AUTH_BROKER_"

    @field_validator("REGISTRY_API_URL", "APP_HUB_URL", "PROFILE_HUB_URL")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """
        Service roots must be absolute http(s) URLs.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - lowercase hostname
          - drop query/fragment (path is kept)
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("service URLs must start with http:// or https://")

        if not p.hostname:
            raise ValueError("service URLs must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))

    @field_validator("NETWORK")
    @classmethod
    def normalize_network(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in NETWORKS:
            raise ValueError(f"NETWORK must be one of: {', '.join(sorted(NETWORKS))}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = (v or "").strip().upper() or "INFO"
        if not isinstance(logging.getLevelName(v), int):
            raise ValueError(f"unknown LOG_LEVEL {v}")
        return v

    @field_validator("AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_bool(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @field_validator("WRITE_SCOPE")
    @classmethod
    def normalize_write_scope(cls, v: str) -> str:
        return (v or "").strip() or "store_write"

    @field_validator("PORT")
    @classmethod
    def check_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("PORT must be between 1 and 65535")
        return v


def load_backup_phrase(settings: Settings) -> str:
    """
    Resolve the seed phrase the broker runs with.

    BACKUP_PHRASE is used as-is; otherwise ENCRYPTED_BACKUP_PATH is read
    (base64 of the encrypted backup format) and decrypted with
    BACKUP_PASSWORD. Raises ValueError when neither source is configured.
    """
    if settings.BACKUP_PHRASE.strip():
        return " ".join(settings.BACKUP_PHRASE.split())

    if not settings.ENCRYPTED_BACKUP_PATH:
        raise ValueError("no backup phrase configured (set BACKUP_PHRASE or ENCRYPTED_BACKUP_PATH)")
    if not settings.BACKUP_PASSWORD:
        raise ValueError("ENCRYPTED_BACKUP_PATH is set but BACKUP_PASSWORD is empty")

    raw = Path(settings.ENCRYPTED_BACKUP_PATH).expanduser().read_text(encoding="ascii").strip()
    logger.info("Decrypting backup phrase from %s", settings.ENCRYPTED_BACKUP_PATH)
    return decrypt_backup_phrase(base64.b64decode(raw), settings.BACKUP_PASSWORD)
