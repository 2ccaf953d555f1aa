"""
End-user credential store used by the password and authorization_code grants.
"""
import logging
from functools import lru_cache

from sqlalchemy.orm import Session, sessionmaker

from token_server.identity import Destination, Identity
from token_server.models import User
from token_server.records import UserRecord
from token_server.seed import hash_password, verify_password

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Checked against when the username is unknown so timing doesn't reveal which usernames exist
    return hash_password("unknown-user-placeholder")


def _to_record(user: User) -> UserRecord:
    return UserRecord(user_id=user.id, username=user.username, name=user.name, email=user.email)


class UserStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def verify(self, username: str, password: str) -> UserRecord | None:
        """Return the user if the password matches, else None."""
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.username == username).first()
            record = _to_record(user) if user else None
            password_hash = user.password_hash if user else None
        finally:
            db.close()
        # No session may be open during bcrypt
        if not verify_password(password, password_hash or _dummy_hash()) or record is None:
            return None
        return record

    def get(self, user_id: int) -> UserRecord | None:
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            return _to_record(user) if user else None
        finally:
            db.close()

    def claims_for(self, user: UserRecord, scopes: frozenset[str]) -> Identity:
        """
        Build the end-user identity for the granted scopes. Subclass to add claims
        from another user directory.
        profile -> preferred_username (both tokens), name (ID token); email -> email (ID token).
        """
        identity = Identity(subject=str(user.user_id))
        if "profile" in scopes:
            identity.add_claim(
                "preferred_username", user.username, Destination.ACCESS_TOKEN, Destination.IDENTITY_TOKEN
            )
            if user.name is not None:
                identity.add_claim("name", user.name, Destination.IDENTITY_TOKEN)
        if "email" in scopes and user.email is not None:
            identity.add_claim("email", user.email, Destination.IDENTITY_TOKEN)
        return identity
