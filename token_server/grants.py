"""
Grant processing for the token endpoint: client_credentials, authorization_code (PKCE),
refresh_token (with rotation) and password.
Each grant validates its own inputs and produces the identity and scopes to put in tokens.
"""
import hashlib
import logging
import re
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass

from token_server.clients import ClientRegistry
from token_server.config import ServerSettings
from token_server.errors import (
    CodeReplayed,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    UnauthorizedClient,
    UnsupportedGrantType,
)
from token_server.identity import Destination, Identity
from token_server.ledger import PKCE_METHOD_S256, ConsumptionLedger
from token_server.records import ClientRecord, GrantRequest, GrantType
from token_server.scopes import ScopeRegistry
from token_server.users import UserStore

logger = logging.getLogger(__name__)

# RFC 7636 §4.1: 43-128 characters from the unreserved set
_CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def pkce_verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """Verify PKCE: S256 only; SHA256(verifier) base64url == challenge."""
    if method != PKCE_METHOD_S256:
        return False
    return secrets.compare_digest(s256_challenge(code_verifier), code_challenge)


@dataclass(frozen=True)
class GrantResult:
    client: ClientRecord
    identity: Identity
    scopes: frozenset[str]
    refresh_token: str | None = None


class GrantProcessor:
    def __init__(
        self,
        settings: ServerSettings,
        clients: ClientRegistry,
        scopes: ScopeRegistry,
        users: UserStore,
        ledger: ConsumptionLedger,
    ):
        self._settings = settings
        self._clients = clients
        self._scopes = scopes
        self._users = users
        self._ledger = ledger
        self._handlers = {
            GrantType.CLIENT_CREDENTIALS: self._client_credentials,
            GrantType.AUTHORIZATION_CODE: self._authorization_code,
            GrantType.REFRESH_TOKEN: self._refresh_token,
            GrantType.PASSWORD: self._password,
        }

    def process(self, request: GrantRequest) -> GrantResult:
        handler = self._handlers.get(request.grant_type)
        if handler is None or request.grant_type not in self._settings.allowed_grant_types:
            raise UnsupportedGrantType(f"Grant type {request.grant_type.value} is not enabled")
        client = self._authenticate_client(request)
        if request.grant_type not in client.allowed_grant_types:
            raise UnauthorizedClient(f"Client is not allowed to use {request.grant_type.value}")
        return handler(request, client)

    def _authenticate_client(self, request: GrantRequest) -> ClientRecord:
        if not request.client_id:
            raise InvalidClient("client_id is required")
        client = self._clients.resolve(request.client_id)
        if client.is_confidential:
            self._clients.require_authenticated(client, request.client_secret)
        elif request.client_secret:
            raise InvalidClient("Public clients must not send a client_secret")
        return client

    def _grantable_scopes(self, client: ClientRecord, requested: frozenset[str]) -> frozenset[str]:
        """requested ∩ client-allowed ∩ registered; nothing requested means everything the client may have."""
        candidates = (requested or client.allowed_scopes) & client.allowed_scopes
        granted = self._scopes.filter(candidates)
        if requested and not granted:
            raise InvalidScope("None of the requested scopes are allowed for this client")
        return granted

    def _maybe_refresh_token(
        self,
        client: ClientRecord,
        identity: Identity,
        scopes: frozenset[str],
        user_id: int | None,
        family_id: str | None = None,
    ) -> str | None:
        if not self._settings.issues_refresh_tokens or GrantType.REFRESH_TOKEN not in client.allowed_grant_types:
            return None
        return self._ledger.issue_refresh_token(
            client_id=client.client_id,
            subject=identity.subject,
            scopes=scopes,
            user_id=user_id,
            family_id=family_id,
        )

    # --- grants ---

    def _client_credentials(self, request: GrantRequest, client: ClientRecord) -> GrantResult:
        if not client.is_confidential:
            raise UnauthorizedClient("client_credentials requires a confidential client")
        scopes = self._grantable_scopes(client, request.requested_scopes)
        # Subject is the client itself; no end-user claims
        identity = Identity(subject=client.client_id)
        logger.info("client_credentials grant for client_id=%s", client.client_id)
        return GrantResult(client=client, identity=identity, scopes=scopes)

    def _authorization_code(self, request: GrantRequest, client: ClientRecord) -> GrantResult:
        if not request.code or not request.redirect_uri:
            raise InvalidRequest("code and redirect_uri are required for authorization_code grant")
        if self._settings.require_pkce and not request.code_verifier:
            raise InvalidRequest("code_verifier is required for authorization_code grant")
        if request.code_verifier and not _CODE_VERIFIER_RE.match(request.code_verifier):
            raise InvalidRequest("code_verifier is malformed")

        grant = self._ledger.find_code(request.code)
        if grant is None:
            raise InvalidGrant("Invalid or expired authorization code")
        if grant.used:
            revoked = self._ledger.revoke_family(grant.family_id)
            logger.warning(
                "Authorization code replay for client_id=%s; revoked %d refresh token(s)",
                client.client_id,
                revoked,
            )
            raise CodeReplayed("Authorization code already used")
        if grant.client_id != client.client_id:
            raise InvalidGrant("Client mismatch")
        if not self._clients.redirect_uri_allowed(client, request.redirect_uri):
            raise InvalidGrant("redirect_uri is not registered for this client")
        if grant.redirect_uri != request.redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")
        if grant.is_expired():
            raise InvalidGrant("Authorization code expired")

        if grant.code_challenge:
            if not request.code_verifier or not pkce_verify(
                request.code_verifier, grant.code_challenge, grant.code_challenge_method
            ):
                raise InvalidGrant("PKCE verification failed")
        elif self._settings.require_pkce or not client.is_confidential:
            # Public clients always need PKCE, whatever the server setting
            raise InvalidGrant("Authorization code was issued without a PKCE challenge")
        elif request.code_verifier:
            raise InvalidGrant("code_verifier sent for a code issued without a PKCE challenge")

        if not self._ledger.consume_code(request.code):
            # Lost the race to a concurrent redemption of the same code
            raise InvalidGrant("Authorization code already used")

        user = self._users.get(grant.user_id)
        if user is None:
            raise InvalidGrant("The user bound to this authorization code no longer exists")
        scopes = self._scopes.filter(grant.scopes & client.allowed_scopes)
        identity = self._users.claims_for(user, scopes)
        if grant.nonce:
            identity.add_claim("nonce", grant.nonce, Destination.IDENTITY_TOKEN)
        refresh = self._maybe_refresh_token(client, identity, scopes, user.user_id, grant.family_id)
        logger.info("authorization_code grant for client_id=%s sub=%s", client.client_id, identity.subject)
        return GrantResult(client=client, identity=identity, scopes=scopes, refresh_token=refresh)

    def _refresh_token(self, request: GrantRequest, client: ClientRecord) -> GrantResult:
        if not request.refresh_token:
            raise InvalidRequest("refresh_token is required")
        grant = self._ledger.find_refresh_token(request.refresh_token)
        if grant is None:
            raise InvalidGrant("Invalid refresh token")
        if grant.client_id != client.client_id:
            raise InvalidGrant("Client mismatch")
        if grant.revoked:
            revoked = self._ledger.revoke_family(grant.family_id)
            logger.warning(
                "Revoked refresh token presented by client_id=%s; revoked %d token(s) in its family",
                client.client_id,
                revoked,
            )
            raise InvalidGrant("Refresh token has been revoked")
        if grant.is_expired():
            raise InvalidGrant("Refresh token expired")
        if request.requested_scopes - grant.scopes:
            raise InvalidScope("Requested scope exceeds the original grant")

        scopes = self._scopes.filter((request.requested_scopes or grant.scopes) & client.allowed_scopes)
        if grant.user_id is not None:
            user = self._users.get(grant.user_id)
            if user is None:
                raise InvalidGrant("The user bound to this refresh token no longer exists")
            identity = self._users.claims_for(user, scopes)
        else:
            identity = Identity(subject=grant.subject)

        new_refresh = None
        if self._settings.rotate_refresh_tokens:
            new_refresh = self._ledger.rotate_refresh_token(request.refresh_token)
            if new_refresh is None:
                raise InvalidGrant("Refresh token has already been used")
        logger.info(
            "refresh_token grant for client_id=%s sub=%s (rotated=%s)",
            client.client_id,
            identity.subject,
            new_refresh is not None,
        )
        return GrantResult(client=client, identity=identity, scopes=scopes, refresh_token=new_refresh)

    def _password(self, request: GrantRequest, client: ClientRecord) -> GrantResult:
        if not request.username or request.password is None:
            raise InvalidRequest("username and password are required for password grant")
        user = self._users.verify(request.username, request.password)
        if user is None:
            raise InvalidGrant("Invalid username or password")
        scopes = self._grantable_scopes(client, request.requested_scopes)
        identity = self._users.claims_for(user, scopes)
        refresh = self._maybe_refresh_token(client, identity, scopes, user.user_id)
        logger.info("password grant for client_id=%s sub=%s", client.client_id, identity.subject)
        return GrantResult(client=client, identity=identity, scopes=scopes, refresh_token=refresh)
