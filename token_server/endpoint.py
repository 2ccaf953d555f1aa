"""
Token endpoint orchestrator: the single place a client-facing token is minted.
Parses the raw form into a GrantRequest, runs the grant processor then the token issuer,
and maps every failure onto the RFC 6749 §5.2 error vocabulary.
"""
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Iterable
from urllib.parse import unquote_plus

from token_server.audit import (
    EVENT_CODE_REPLAYED,
    EVENT_TOKEN_FAILED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    AuditTrail,
)
from token_server.config import ServerSettings
from token_server.errors import (
    CodeReplayed,
    InvalidClient,
    InvalidRequest,
    KeyUnavailable,
    OAuthError,
    UnsupportedGrantType,
)
from token_server.grants import GrantProcessor
from token_server.issuer import TokenIssuer
from token_server.records import ClientAuthMethod, GrantRequest, GrantType, format_scope, parse_scope

logger = logging.getLogger(__name__)

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_KNOWN_PARAMS = (
    "grant_type",
    "client_id",
    "client_secret",
    "code",
    "code_verifier",
    "redirect_uri",
    "refresh_token",
    "username",
    "password",
    "scope",
)


@dataclass(frozen=True)
class RawTokenRequest:
    """Form parameters as received (pairs, so repeats are visible) plus the Authorization header."""
    form: tuple[tuple[str, str], ...]
    authorization: str | None = None
    client_ip: str | None = None

    @classmethod
    def from_mapping(cls, form: dict, authorization: str | None = None, client_ip: str | None = None):
        return cls(form=tuple(form.items()), authorization=authorization, client_ip=client_ip)


@dataclass(frozen=True)
class TokenEndpointResponse:
    status_code: int
    body: dict
    headers: dict = field(default_factory=lambda: dict(_NO_STORE_HEADERS))


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """
    Parse 'Basic <base64(client_id:client_secret)>'. Returns None when the header is not Basic.
    Raises InvalidClient for a malformed Basic header.
    """
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClient("Malformed Authorization header")
    if ":" not in decoded:
        raise InvalidClient("Malformed Authorization header")
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote_plus(client_id), unquote_plus(client_secret)


def _collect_params(pairs: Iterable[tuple[str, object]]) -> dict[str, str]:
    params: dict[str, str] = {}
    for name, value in pairs:
        if name not in _KNOWN_PARAMS:
            continue
        if not isinstance(value, str):
            raise InvalidRequest(f"Parameter {name} must be a string")
        if name in params:
            raise InvalidRequest(f"Parameter {name} was included more than once")
        params[name] = value
    return params


def parse_grant_request(raw: RawTokenRequest) -> GrantRequest:
    """Turn form pairs and the optional Basic header into a GrantRequest."""
    params = _collect_params(raw.form)
    grant_type_value = (params.get("grant_type") or "").strip()
    if not grant_type_value:
        raise InvalidRequest("grant_type is required")
    try:
        grant_type = GrantType(grant_type_value)
    except ValueError:
        raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type_value}")

    client_id = params.get("client_id") or None
    client_secret = params.get("client_secret")
    auth_method = ClientAuthMethod.CLIENT_SECRET_POST if client_secret else ClientAuthMethod.NONE

    basic = _parse_basic(raw.authorization) if raw.authorization else None
    if basic:
        if client_secret:
            raise InvalidRequest("Client credentials must not be sent in both the header and the body")
        basic_id, basic_secret = basic
        if client_id and client_id != basic_id:
            raise InvalidRequest("client_id does not match the Authorization header")
        client_id, client_secret = basic_id, basic_secret
        auth_method = ClientAuthMethod.CLIENT_SECRET_BASIC

    return GrantRequest(
        grant_type=grant_type,
        client_id=client_id.strip() if client_id else None,
        client_secret=client_secret or None,
        code=params.get("code") or None,
        code_verifier=params.get("code_verifier") or None,
        redirect_uri=params.get("redirect_uri") or None,
        refresh_token=params.get("refresh_token") or None,
        username=params.get("username") or None,
        password=params.get("password"),
        requested_scopes=parse_scope(params.get("scope")),
        client_auth_method=auth_method,
    )


class TokenEndpoint:
    def __init__(
        self,
        settings: ServerSettings,
        grants: GrantProcessor,
        issuer: TokenIssuer,
        audit: AuditTrail | None = None,
    ):
        self._settings = settings
        self._grants = grants
        self._issuer = issuer
        self._audit = audit

    def handle(self, raw: RawTokenRequest) -> TokenEndpointResponse:
        grant_request = None
        try:
            grant_request = parse_grant_request(raw)
            result = self._grants.process(grant_request)
            tokens = self._issuer.issue(result.identity, result.scopes, result.client.client_id)
        except OAuthError as e:
            return self._error_response(e, grant_request, raw)
        except KeyUnavailable as e:
            logger.critical("Token issuance failed: %s", e)
            return self._server_error(grant_request, raw)
        except Exception:
            logger.exception("Unexpected error in token endpoint")
            return self._server_error(grant_request, raw)

        body = {
            "access_token": tokens.access_token.value,
            "token_type": "Bearer",
            "expires_in": tokens.access_token.lifetime,
            "scope": format_scope(result.scopes),
        }
        if tokens.identity_token is not None:
            body["id_token"] = tokens.identity_token.value
        if result.refresh_token:
            body["refresh_token"] = result.refresh_token
            body["refresh_expires_in"] = self._settings.refresh_token_lifetime

        event = EVENT_TOKEN_REFRESHED if grant_request.grant_type == GrantType.REFRESH_TOKEN else EVENT_TOKEN_ISSUED
        self._record(
            event,
            grant_request,
            raw,
            client_id=result.client.client_id,
            subject=result.identity.subject,
            outcome=OUTCOME_SUCCESS,
        )
        return TokenEndpointResponse(status_code=200, body=body)

    def _error_response(self, error: OAuthError, grant_request, raw) -> TokenEndpointResponse:
        logger.info("Token request rejected: %s (%s)", error.error, error.description or "")
        self._record(
            EVENT_CODE_REPLAYED if isinstance(error, CodeReplayed) else EVENT_TOKEN_FAILED,
            grant_request,
            raw,
            client_id=grant_request.client_id if grant_request else None,
            outcome=OUTCOME_FAIL,
            error=error.error,
        )
        headers = dict(_NO_STORE_HEADERS)
        status_code = error.status_code
        # RFC 6749 §5.2: failed Basic authentication answers 401 with a challenge
        if isinstance(error, InvalidClient) and raw.authorization and raw.authorization.strip().lower().startswith("basic"):
            status_code = 401
            headers["WWW-Authenticate"] = 'Basic realm="token"'
        return TokenEndpointResponse(status_code=status_code, body=error.to_dict(), headers=headers)

    def _server_error(self, grant_request, raw) -> TokenEndpointResponse:
        self._record(
            EVENT_TOKEN_FAILED,
            grant_request,
            raw,
            client_id=grant_request.client_id if grant_request else None,
            outcome=OUTCOME_FAIL,
            error="server_error",
        )
        return TokenEndpointResponse(
            status_code=500,
            body={"error": "server_error", "error_description": "The server could not issue a token"},
        )

    def _record(self, event_type: str, grant_request, raw: RawTokenRequest, **fields) -> None:
        if self._audit is None:
            return
        self._audit.record(
            event_type,
            grant_type=grant_request.grant_type.value if grant_request else None,
            ip=raw.client_ip,
            **fields,
        )
