"""
Plain data records passed between the token endpoint, grant processor and registries.
Framework-free: no FastAPI or SQLAlchemy types cross these boundaries.
"""
from dataclasses import dataclass, field
from enum import Enum


class GrantType(str, Enum):
    CLIENT_CREDENTIALS = "client_credentials"
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"
    PASSWORD = "password"


class ClientAuthMethod(str, Enum):
    NONE = "none"
    CLIENT_SECRET_POST = "client_secret_post"
    CLIENT_SECRET_BASIC = "client_secret_basic"


@dataclass(frozen=True)
class ClientRecord:
    client_id: str
    secret_hash: bytes | None
    allowed_grant_types: frozenset[GrantType]
    redirect_uris: frozenset[str] = frozenset()
    allowed_scopes: frozenset[str] = frozenset()

    @property
    def is_confidential(self) -> bool:
        return bool(self.secret_hash)


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    username: str
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class GrantRequest:
    grant_type: GrantType
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    username: str | None = None
    password: str | None = None
    requested_scopes: frozenset[str] = field(default_factory=frozenset)
    client_auth_method: ClientAuthMethod = ClientAuthMethod.NONE


def parse_scope(scope: str | None) -> frozenset[str]:
    """Split a space-delimited scope parameter into a set."""
    if not scope:
        return frozenset()
    return frozenset(s for s in scope.split() if s)


def format_scope(scopes) -> str:
    return " ".join(sorted(scopes))
