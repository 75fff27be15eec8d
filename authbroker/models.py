from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class Identity:
    """
    One identity of the backup phrase, alive for a single request.

    id_address/private_key are derived from (phrase, index); name, profile
    and profile_url are attached once the registry has been asked.
    """

    name: str
    id_address: str
    private_key: str = field(repr=False)
    index: int
    profile: Dict[str, Any] = field(default_factory=dict)
    profile_url: str = ""

    @property
    def is_anonymous(self) -> bool:
        return not self.name

    def reference(self) -> "IdentityRef":
        return IdentityRef(
            name=self.name,
            idAddress=self.id_address,
            index=self.index,
            profileUrl=self.profile_url,
        )


@dataclass(frozen=True)
class SignInEntry:
    """One selectable link on the sign-in page."""

    name: str
    id_address: str
    url: str

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.name} ({self.id_address})"
        return f"{self.id_address} (anonymous)"


class AuthRequestPayload(BaseModel):
    """Claims of an application's (untrusted until verified) sign-in request."""

    model_config = ConfigDict(extra="allow")

    jti: Optional[str] = None
    iat: Optional[float] = None
    exp: Optional[float] = None
    iss: str
    public_keys: List[str] = Field(min_length=1)
    domain_name: str
    manifest_uri: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    version: Optional[str] = None

    @property
    def transit_public_key(self) -> str:
        return self.public_keys[0]


class IdentityRef(BaseModel):
    name: str = ""
    idAddress: str
    index: int = Field(ge=0)
    profileUrl: str = ""


class CredentialMetadata(BaseModel):
    """
    Handshake state carried inside the encrypted credential.

    Never leaves the broker: the outward credential only keeps profileUrl.
    """

    id: IdentityRef
    profileUrl: str = ""
    appOrigin: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    salt: str
