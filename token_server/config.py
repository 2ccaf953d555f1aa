"""
Token server configuration. Read from env once; no secrets in this file.
ServerSettings is built at startup and passed to every component; grant logic never reads env directly.
"""
import os
from dataclasses import dataclass, field

from token_server.records import GrantType


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_set(name: str, default: set[str]) -> frozenset[str]:
    value = os.environ.get(name)
    if value is None:
        return frozenset(default)
    return frozenset(s.strip() for s in value.replace(",", " ").split() if s.strip())


# Issuer URL (public identifier)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# SQLite DB for development
DATABASE_URL = os.environ.get("AUTH_DATABASE_URL", "sqlite:///./token_server.db")

# Access/identity token lifetime (seconds)
ACCESS_TOKEN_LIFETIME = int(os.environ.get("OAUTH_ACCESS_TOKEN_LIFETIME", "300"))

# Refresh token lifetime (seconds)
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_EXPIRES", "86400"))

# Authorization code lifetime (seconds). Short-lived.
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_CODE_TTL_SECONDS", "30"))

ALLOWED_GRANT_TYPES = frozenset(
    GrantType(g) for g in _env_set("OAUTH_ALLOWED_GRANT_TYPES", {g.value for g in GrantType})
)

REQUIRE_PKCE = _env_bool("OAUTH_REQUIRE_PKCE", True)
ROTATE_REFRESH_TOKENS = _env_bool("OAUTH_ROTATE_REFRESH_TOKENS", True)

# Registered scopes
REGISTERED_SCOPES = _env_set("OAUTH_SCOPES", {"openid", "profile", "email", "api.read", "api.admin"})

# Resource audience for access tokens; unset means aud = client_id
API_AUDIENCE = os.environ.get("OAUTH_API_AUDIENCE", "").strip() or None

ID_TOKEN_ENABLED = _env_bool("OAUTH_ID_TOKEN_ENABLED", True)

# Path to RSA private key PEM file. If missing, a key is generated and saved there.
SIGNING_KEY_PATH = os.environ.get("OAUTH_SIGNING_KEY_PATH", ".auth_signing_key.pem")
# Optional previous key for rotation: published in JWKS, never used for new tokens.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("OAUTH_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# bcrypt work factor for client secrets and user passwords
BCRYPT_ROUNDS = int(os.environ.get("OAUTH_BCRYPT_ROUNDS", "12"))


@dataclass(frozen=True)
class ServerSettings:
    issuer: str = ISSUER
    access_token_lifetime: int = ACCESS_TOKEN_LIFETIME
    refresh_token_lifetime: int = REFRESH_TOKEN_EXPIRES
    code_ttl: int = CODE_TTL_SECONDS
    allowed_grant_types: frozenset[GrantType] = ALLOWED_GRANT_TYPES
    require_pkce: bool = REQUIRE_PKCE
    rotate_refresh_tokens: bool = ROTATE_REFRESH_TOKENS
    registered_scopes: frozenset[str] = field(default=REGISTERED_SCOPES)
    api_audience: str | None = API_AUDIENCE
    id_token_enabled: bool = ID_TOKEN_ENABLED

    def __post_init__(self):
        if self.access_token_lifetime <= 0:
            raise ValueError("access_token_lifetime must be positive")
        if self.refresh_token_lifetime <= 0:
            raise ValueError("refresh_token_lifetime must be positive")
        # Accept plain strings/sets from callers; store as frozensets of the right type
        object.__setattr__(
            self, "allowed_grant_types", frozenset(GrantType(g) for g in self.allowed_grant_types)
        )
        object.__setattr__(self, "registered_scopes", frozenset(self.registered_scopes))

    @property
    def issues_refresh_tokens(self) -> bool:
        return GrantType.REFRESH_TOKEN in self.allowed_grant_types
