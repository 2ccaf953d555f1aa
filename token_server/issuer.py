"""
Builds and signs access tokens and OIDC identity tokens (RS256 JWTs).
A claim is embedded only in the token types named by its destinations.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import jwt

from token_server.config import ServerSettings
from token_server.errors import KeyUnavailable
from token_server.identity import Destination, Identity
from token_server.keys import KeyProvider
from token_server.records import format_scope

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYP = "at+jwt"
ID_TOKEN_TYP = "JWT"


class TokenType(str, Enum):
    ACCESS = "access"
    IDENTITY = "identity"


@dataclass(frozen=True)
class IssuedToken:
    token_type: TokenType
    subject: str
    audience: str
    scopes: frozenset[str]
    issued_at: int
    expires_at: int
    key_id: str
    value: str
    claims: Mapping[str, Any] = field(default_factory=dict)

    @property
    def lifetime(self) -> int:
        return self.expires_at - self.issued_at


@dataclass(frozen=True)
class IssuedTokens:
    access_token: IssuedToken
    identity_token: IssuedToken | None = None


class TokenIssuer:
    def __init__(self, settings: ServerSettings, keys: KeyProvider):
        self._settings = settings
        self._keys = keys

    def issue(
        self,
        identity: Identity,
        scopes: frozenset[str],
        client_id: str,
        now: int | None = None,
    ) -> IssuedTokens:
        """
        Sign an access token, plus an identity token when openid was granted and ID tokens are enabled.
        Raises KeyUnavailable if there is no usable signing key.
        """
        try:
            key = self._keys.active_key()
        except KeyUnavailable:
            logger.critical("No active signing key; token issuance is down until keys are configured")
            raise
        iat = int(now if now is not None else time.time())
        exp = iat + self._settings.access_token_lifetime

        access_audience = self._settings.api_audience or client_id
        access_claims = {
            **identity.claims_for(Destination.ACCESS_TOKEN),
            "iss": self._settings.issuer,
            "sub": identity.subject,
            "aud": access_audience,
            "exp": exp,
            "iat": iat,
            "jti": secrets.token_urlsafe(16),
            "scope": format_scope(scopes),
            "client_id": client_id,
        }
        access = self._sign(TokenType.ACCESS, access_claims, key, ACCESS_TOKEN_TYP, scopes)

        id_token = None
        if "openid" in scopes and self._settings.id_token_enabled:
            id_claims = {
                **identity.claims_for(Destination.IDENTITY_TOKEN),
                "iss": self._settings.issuer,
                "sub": identity.subject,
                "aud": client_id,
                "exp": exp,
                "iat": iat,
            }
            id_token = self._sign(TokenType.IDENTITY, id_claims, key, ID_TOKEN_TYP, scopes)
        return IssuedTokens(access_token=access, identity_token=id_token)

    def _sign(self, token_type, claims, key, typ, scopes) -> IssuedToken:
        value = jwt.encode(
            claims,
            key.private_key,
            algorithm=key.algorithm,
            headers={"kid": key.key_id, "typ": typ},
        )
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return IssuedToken(
            token_type=token_type,
            subject=claims["sub"],
            audience=claims["aud"],
            scopes=frozenset(scopes),
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            key_id=key.key_id,
            value=value,
            claims=MappingProxyType(dict(claims)),
        )

    def verify(
        self,
        value: str,
        token_type: TokenType = TokenType.ACCESS,
        audience: str | None = None,
    ) -> dict:
        """
        Verify a token issued here: resolve the kid (retired keys included), check signature,
        issuer and expiry. The typ header must match token_type. Raises jwt.InvalidTokenError.
        """
        header = jwt.get_unverified_header(value)
        expected_typ = ACCESS_TOKEN_TYP if token_type == TokenType.ACCESS else ID_TOKEN_TYP
        if header.get("typ") != expected_typ:
            raise jwt.InvalidTokenError(f"Not an {token_type.value} token")
        kid = header.get("kid")
        key = self._keys.key_for(kid) if kid else None
        if key is None:
            raise jwt.InvalidTokenError(f"Unknown signing key id: {kid!r}")
        options = {"verify_aud": audience is not None}
        return jwt.decode(
            value,
            key.public_key(),
            algorithms=[key.algorithm],
            issuer=self._settings.issuer,
            audience=audience,
            options=options,
        )
