"""
Pytest configuration for token_server. In-memory SQLite, a throwaway signing key path,
and cheap bcrypt so tests don't touch the working directory or take long.
"""
import os
import tempfile

# Must be set before token_server.config is imported
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OAUTH_SIGNING_KEY_PATH"] = os.path.join(tempfile.gettempdir(), "token_server_test_signing_key.pem")
os.environ["OAUTH_BCRYPT_ROUNDS"] = "4"
for _var in (
    "OAUTH_SIGNING_KEY_PREVIOUS_PATH",
    "OAUTH_SEED_USER",
    "OAUTH_SEED_PASSWORD",
    "OAUTH_CLIENT_ID",
    "OAUTH_SEED_CLIENT_SECRET",
):
    os.environ.pop(_var, None)

import pytest  # noqa: E402

from token_server.config import ServerSettings  # noqa: E402
from token_server.database import init_db, make_engine, make_session_factory  # noqa: E402
from token_server.keys import KeyProvider, generate_signing_key  # noqa: E402
from token_server.records import GrantType  # noqa: E402
from token_server.seed import register_client, register_user  # noqa: E402

REDIRECT_URI = "http://127.0.0.1:8000/callback"


def _seed(session_factory):
    db = session_factory()
    try:
        register_client(
            db,
            "svc1",
            grant_types=[GrantType.CLIENT_CREDENTIALS],
            scopes=["api", "api.read"],
            client_secret="s3cr3t",
        )
        register_client(
            db,
            "spa",
            grant_types=[GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN],
            redirect_uris=[REDIRECT_URI],
            scopes=["openid", "profile", "email", "api.read"],
        )
        register_client(
            db,
            "webapp",
            grant_types=[GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN, GrantType.PASSWORD],
            redirect_uris=[REDIRECT_URI],
            scopes=["openid", "profile", "email", "api", "api.read"],
            client_secret="websecret",
        )
        user = register_user(db, "alice", "wonderland", name="Alice Liddell", email="alice@example.com")
        return user.id
    finally:
        db.close()


@pytest.fixture
def seed():
    """Callable that registers the standard test clients and user; returns alice's user id."""
    return _seed


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def user_id(session_factory):
    return _seed(session_factory)


@pytest.fixture(scope="session")
def signing_key():
    return generate_signing_key()


@pytest.fixture
def keys(signing_key):
    return KeyProvider([signing_key])


@pytest.fixture
def settings():
    return ServerSettings(
        issuer="https://auth.test",
        access_token_lifetime=300,
        refresh_token_lifetime=3600,
        code_ttl=30,
        registered_scopes={"openid", "profile", "email", "api", "api.read"},
        api_audience=None,
    )
