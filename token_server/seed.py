"""
Client/user management path and seeding from environment. No hardcoded credentials.
Optional: OAUTH_SEED_USER + OAUTH_SEED_PASSWORD, OAUTH_CLIENT_ID (+ OAUTH_REDIRECT_URI(S),
OAUTH_SEED_CLIENT_SECRET, OAUTH_CLIENT_GRANT_TYPES, OAUTH_CLIENT_SCOPES).
"""
import json
import logging
import os
from typing import Iterable

import bcrypt
from sqlalchemy.orm import Session

from token_server.config import BCRYPT_ROUNDS
from token_server.models import Client, User
from token_server.records import GrantType

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str | bytes) -> bool:
    raw = plain.encode("utf-8")[:72]
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    try:
        return bcrypt.checkpw(raw, hashed)
    except ValueError:
        # Malformed stored hash
        return False


def register_client(
    db: Session,
    client_id: str,
    *,
    grant_types: Iterable[GrantType | str],
    redirect_uris: Iterable[str] = (),
    scopes: Iterable[str] = (),
    client_secret: str | None = None,
) -> Client:
    """Create or replace a client registration. A client_secret makes the client confidential."""
    grants = sorted({GrantType(g).value for g in grant_types})
    secret_hash = hash_password(client_secret) if client_secret else None
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if client is None:
        client = Client(client_id=client_id)
        db.add(client)
    client.redirect_uris = json.dumps(sorted(set(redirect_uris)))
    client.grant_types = json.dumps(grants)
    client.scopes = json.dumps(sorted(set(scopes)))
    client.client_secret_hash = secret_hash
    db.commit()
    logger.info("Registered client: %s (confidential=%s, grants=%s)", client_id, bool(secret_hash), ",".join(grants))
    return client


def register_user(
    db: Session,
    username: str,
    password: str,
    *,
    name: str | None = None,
    email: str | None = None,
) -> User:
    user = db.query(User).filter(User.username == username).first()
    if user is None:
        user = User(username=username, password_hash=hash_password(password))
        db.add(user)
    else:
        user.password_hash = hash_password(password)
    user.name = name
    user.email = email
    db.commit()
    return user


def _split_env(name: str) -> list[str]:
    value = os.environ.get(name) or ""
    return [v.strip() for v in value.replace(",", " ").split() if v.strip()]


def seed_from_env(db: Session) -> None:
    """Create one user and/or one client from env if set."""
    seed_user = os.environ.get("OAUTH_SEED_USER")
    seed_password = os.environ.get("OAUTH_SEED_PASSWORD")
    if seed_user and seed_password:
        if db.query(User).filter(User.username == seed_user).first() is None:
            register_user(db, seed_user, seed_password)
            logger.info("Seeded user: %s", seed_user)
        else:
            logger.debug("User already exists: %s", seed_user)

    client_id = os.environ.get("OAUTH_CLIENT_ID")
    if client_id:
        if db.query(Client).filter(Client.client_id == client_id).first() is None:
            uris = _split_env("OAUTH_REDIRECT_URI") or _split_env("OAUTH_REDIRECT_URIS")
            grants = _split_env("OAUTH_CLIENT_GRANT_TYPES") or [
                GrantType.AUTHORIZATION_CODE.value,
                GrantType.REFRESH_TOKEN.value,
            ]
            register_client(
                db,
                client_id,
                grant_types=grants,
                redirect_uris=uris,
                scopes=_split_env("OAUTH_CLIENT_SCOPES"),
                client_secret=os.environ.get("OAUTH_SEED_CLIENT_SECRET") or None,
            )
        else:
            logger.debug("Client already exists: %s", client_id)
