"""
Ledger of single-use grants: authorization codes and refresh tokens.
Consumption is a conditional UPDATE whose row count decides the winner, so concurrent
redemptions of the same code or refresh token succeed exactly once.
Committed consumption is never rolled back, even if the request later fails.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from token_server.models import AuthorizationCode, Client, RefreshToken
from token_server.records import format_scope, parse_scope

logger = logging.getLogger(__name__)

PKCE_METHOD_S256 = "S256"


def hash_token(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _aware(dt: datetime) -> datetime:
    # SQLite returns naive datetimes; everything is stored in UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _new_family_id() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class CodeGrant:
    code: str
    client_id: str
    redirect_uri: str
    user_id: int
    scopes: frozenset[str]
    code_challenge: str | None
    code_challenge_method: str | None
    nonce: str | None
    family_id: str
    expires_at: datetime
    used: bool

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


@dataclass(frozen=True)
class RefreshGrant:
    client_id: str
    subject: str
    user_id: int | None
    scopes: frozenset[str]
    family_id: str
    expires_at: datetime
    revoked: bool

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


class ConsumptionLedger:
    def __init__(self, session_factory: sessionmaker, refresh_token_lifetime: int, code_ttl: int = 30):
        self._session_factory = session_factory
        self._refresh_token_lifetime = refresh_token_lifetime
        self._code_ttl = code_ttl

    # --- authorization codes ---

    def issue_authorization_code(
        self,
        *,
        client_id: str,
        redirect_uri: str,
        user_id: int,
        scopes,
        ttl: int | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """
        Store a new code for the login/consent step and return its value.
        redirect_uri must be registered for the client. ttl defaults to the configured code lifetime.
        """
        if code_challenge and (code_challenge_method or PKCE_METHOD_S256) != PKCE_METHOD_S256:
            raise ValueError("code_challenge_method must be S256")
        code = secrets.token_urlsafe(32)
        db: Session = self._session_factory()
        try:
            client = db.query(Client).filter(Client.client_id == client_id).first()
            if client is None or redirect_uri not in client.get_redirect_uris_list():
                raise ValueError(f"redirect_uri is not registered for client {client_id}")
            db.add(
                AuthorizationCode(
                    code=code,
                    client_id=client_id,
                    redirect_uri=redirect_uri,
                    user_id=user_id,
                    scope=format_scope(scopes),
                    code_challenge=code_challenge or None,
                    code_challenge_method=PKCE_METHOD_S256 if code_challenge else None,
                    nonce=nonce or None,
                    family_id=_new_family_id(),
                    expires_at=datetime.now(timezone.utc) + timedelta(seconds=self._code_ttl if ttl is None else ttl),
                )
            )
            db.commit()
        finally:
            db.close()
        return code

    def find_code(self, code: str) -> CodeGrant | None:
        db: Session = self._session_factory()
        try:
            row = db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()
            if row is None:
                return None
            return CodeGrant(
                code=row.code,
                client_id=row.client_id,
                redirect_uri=row.redirect_uri,
                user_id=row.user_id,
                scopes=parse_scope(row.scope),
                code_challenge=row.code_challenge,
                code_challenge_method=row.code_challenge_method,
                nonce=row.nonce,
                family_id=row.family_id,
                expires_at=_aware(row.expires_at),
                used=row.used,
            )
        finally:
            db.close()

    def consume_code(self, code: str) -> bool:
        """Mark the code used. True for exactly one caller; False if it was already consumed."""
        db: Session = self._session_factory()
        try:
            result = db.execute(
                update(AuthorizationCode)
                .where(AuthorizationCode.code == code, AuthorizationCode.used.is_(False))
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    # --- refresh tokens ---

    def issue_refresh_token(
        self,
        *,
        client_id: str,
        subject: str,
        scopes,
        user_id: int | None = None,
        family_id: str | None = None,
    ) -> str:
        value = secrets.token_urlsafe(48)
        db: Session = self._session_factory()
        try:
            db.add(self._refresh_row(value, client_id, subject, user_id, format_scope(scopes), family_id or _new_family_id()))
            db.commit()
        finally:
            db.close()
        return value

    def _refresh_row(self, value, client_id, subject, user_id, scope, family_id) -> RefreshToken:
        return RefreshToken(
            token_hash=hash_token(value),
            user_id=user_id,
            subject=subject,
            client_id=client_id,
            scope=scope,
            family_id=family_id,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self._refresh_token_lifetime),
        )

    def find_refresh_token(self, value: str) -> RefreshGrant | None:
        db: Session = self._session_factory()
        try:
            row = db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(value)).first()
            if row is None:
                return None
            return RefreshGrant(
                client_id=row.client_id,
                subject=row.subject,
                user_id=row.user_id,
                scopes=parse_scope(row.scope),
                family_id=row.family_id,
                expires_at=_aware(row.expires_at),
                revoked=row.revoked,
            )
        finally:
            db.close()

    def rotate_refresh_token(self, value: str) -> str | None:
        """
        Revoke the presented token and insert its replacement in one transaction.
        Returns the new token value, or None if another request already rotated or revoked it.
        """
        token_hash = hash_token(value)
        new_value = secrets.token_urlsafe(48)
        db: Session = self._session_factory()
        try:
            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.token_hash == token_hash, RefreshToken.revoked.is_(False))
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            old = db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).one()
            db.add(self._refresh_row(new_value, old.client_id, old.subject, old.user_id, old.scope, old.family_id))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return new_value

    def revoke_family(self, family_id: str) -> int:
        """Revoke every refresh token descended from one grant. Returns how many were still active."""
        db: Session = self._session_factory()
        try:
            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.family_id == family_id, RefreshToken.revoked.is_(False))
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount
        finally:
            db.close()
