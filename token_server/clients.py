"""
Client registry: resolve client_id to an immutable ClientRecord and authenticate confidential clients.
Read-only; registrations are created through seed.register_client.
"""
import logging

from sqlalchemy.orm import Session, sessionmaker

from token_server.errors import ClientNotFound, Unauthorized
from token_server.models import Client
from token_server.records import ClientRecord, GrantType
from token_server.seed import verify_password

logger = logging.getLogger(__name__)


def _to_record(client: Client) -> ClientRecord:
    grants = set()
    for g in client.get_grant_types_list():
        try:
            grants.add(GrantType(g))
        except ValueError:
            logger.warning("Client %s lists unknown grant type %r; ignoring", client.client_id, g)
    secret_hash = client.client_secret_hash.encode("utf-8") if client.client_secret_hash else None
    return ClientRecord(
        client_id=client.client_id,
        secret_hash=secret_hash,
        allowed_grant_types=frozenset(grants),
        redirect_uris=frozenset(client.get_redirect_uris_list()),
        allowed_scopes=frozenset(client.get_scopes_list()),
    )


class ClientRegistry:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _lookup(self, client_id: str) -> ClientRecord | None:
        db: Session = self._session_factory()
        try:
            client = db.query(Client).filter(Client.client_id == client_id).first()
            return _to_record(client) if client else None
        finally:
            db.close()

    def resolve(self, client_id: str) -> ClientRecord:
        """Return the registered client or raise ClientNotFound."""
        record = self._lookup(client_id)
        if record is None:
            raise ClientNotFound(client_id)
        return record

    def authenticate(self, client_id: str, secret: str | None) -> bool:
        """
        True only for a confidential client whose secret matches the stored bcrypt hash.
        Public clients have nothing to authenticate against and always fail here.
        """
        record = self._lookup(client_id)
        if record is None or not record.is_confidential or not secret:
            return False
        return verify_password(secret, record.secret_hash)

    def require_authenticated(self, client: ClientRecord, secret: str | None) -> None:
        if not self.authenticate(client.client_id, secret):
            logger.info("Client authentication failed for client_id=%s", client.client_id)
            raise Unauthorized()

    @staticmethod
    def redirect_uri_allowed(client: ClientRecord, uri: str | None) -> bool:
        return uri is not None and uri in client.redirect_uris
