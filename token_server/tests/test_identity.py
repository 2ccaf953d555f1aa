"""Tests for claim destinations on Identity."""
import pytest

from token_server.identity import Destination, Identity


def test_claims_only_reach_their_destinations():
    identity = Identity(subject="u1")
    identity.add_claim("role", "admin", Destination.ACCESS_TOKEN)
    identity.add_claim("email", "u1@example.com", Destination.IDENTITY_TOKEN)
    identity.add_claim("locale", "en", Destination.ACCESS_TOKEN, Destination.IDENTITY_TOKEN)

    assert identity.claims_for(Destination.ACCESS_TOKEN) == {"role": "admin", "locale": "en"}
    assert identity.claims_for(Destination.IDENTITY_TOKEN) == {"email": "u1@example.com", "locale": "en"}


def test_claim_without_destination_stays_server_side():
    identity = Identity(subject="u1").add_claim("internal_ref", "db-42")
    assert identity.get("internal_ref") == "db-42"
    assert identity.claims_for(Destination.ACCESS_TOKEN) == {}
    assert identity.claims_for(Destination.IDENTITY_TOKEN) == {}


def test_repeated_claim_becomes_list():
    identity = Identity(subject="u1")
    identity.add_claim("group", "a", Destination.ACCESS_TOKEN)
    identity.add_claim("group", "b", Destination.ACCESS_TOKEN)
    identity.add_claim("group", "c", Destination.ACCESS_TOKEN)
    assert identity.claims_for(Destination.ACCESS_TOKEN) == {"group": ["a", "b", "c"]}


@pytest.mark.parametrize("name", ["sub", "iss", "aud", "exp", "scope", "client_id"])
def test_reserved_claims_rejected(name):
    with pytest.raises(ValueError):
        Identity(subject="u1").add_claim(name, "x", Destination.ACCESS_TOKEN)


def test_destination_must_be_enum():
    with pytest.raises(TypeError):
        Identity(subject="u1").add_claim("role", "admin", "access_token")
