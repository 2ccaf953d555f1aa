"""
Token server (OAuth2 / OIDC). Builds settings, keys and the token endpoint once at startup
and exposes them through app.state; nothing in the grant logic reads globals.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from token_server.audit import AuditTrail
from token_server.audit import router as audit_router
from token_server.clients import ClientRegistry
from token_server.config import SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH, ServerSettings
from token_server.database import engine as default_engine
from token_server.database import init_db, make_session_factory
from token_server.endpoint import TokenEndpoint
from token_server.grants import GrantProcessor
from token_server.issuer import TokenIssuer
from token_server.keys import KeyProvider, load_key_provider
from token_server.ledger import ConsumptionLedger
from token_server.scopes import ScopeRegistry
from token_server.seed import seed_from_env
from token_server.token_endpoint import router as token_router
from token_server.users import UserStore
from token_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


def build_token_endpoint(
    settings: ServerSettings,
    session_factory: sessionmaker,
    keys: KeyProvider,
    audit: AuditTrail | None = None,
    scopes: ScopeRegistry | None = None,
) -> TokenEndpoint:
    """Wire registries, ledger, grant processor and issuer into the orchestrator."""
    grants = GrantProcessor(
        settings,
        ClientRegistry(session_factory),
        scopes if scopes is not None else ScopeRegistry(settings.registered_scopes),
        UserStore(session_factory),
        ConsumptionLedger(session_factory, settings.refresh_token_lifetime, settings.code_ttl),
    )
    return TokenEndpoint(settings, grants, TokenIssuer(settings, keys), audit)


def create_app(
    settings: ServerSettings | None = None,
    engine: Engine | None = None,
    keys: KeyProvider | None = None,
) -> FastAPI:
    if settings is None:
        settings = ServerSettings()
    if engine is None:
        engine = default_engine
    if keys is None:
        keys = load_key_provider(SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH)
    session_factory = make_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables and seed user/client from env on startup."""
        init_db(engine)
        db = session_factory()
        try:
            seed_from_env(db)
        finally:
            db.close()
        logger.info("Token server ready: issuer=%s grants=%s", settings.issuer, ",".join(sorted(g.value for g in settings.allowed_grant_types)))
        yield

    app = FastAPI(title="Token Server", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.keys = keys
    app.state.session_factory = session_factory
    app.state.audit = AuditTrail(session_factory)
    app.state.scopes = ScopeRegistry(settings.registered_scopes)
    app.state.token_endpoint = build_token_endpoint(
        settings, session_factory, keys, app.state.audit, app.state.scopes
    )

    app.include_router(token_router, tags=["token"])
    app.include_router(well_known_router, tags=["well-known"])
    app.include_router(audit_router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "token_server"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "token_server.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
