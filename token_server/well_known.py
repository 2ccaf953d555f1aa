"""
Well-known endpoints: JWKS and OpenID Connect discovery.
"""
from fastapi import APIRouter, Request

from token_server.config import ServerSettings
from token_server.keys import ALGORITHM, KeyProvider
from token_server.records import ClientAuthMethod
from token_server.scopes import ScopeRegistry

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json(request: Request):
    """JSON Web Key Set for token signature verification."""
    keys: KeyProvider = request.app.state.keys
    return keys.jwks()


@router.get("/.well-known/openid-configuration")
def openid_configuration(request: Request):
    """OpenID Connect discovery document."""
    settings: ServerSettings = request.app.state.settings
    scopes: ScopeRegistry = request.app.state.scopes
    issuer = settings.issuer
    return {
        "issuer": issuer,
        "token_endpoint": f"{issuer}/token",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "grant_types_supported": sorted(g.value for g in settings.allowed_grant_types),
        "token_endpoint_auth_methods_supported": [m.value for m in ClientAuthMethod],
        "scopes_supported": list(scopes),
        "response_types_supported": ["code"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [ALGORITHM],
        "code_challenge_methods_supported": ["S256"],
    }
