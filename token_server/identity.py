"""
Authenticated identity built per grant: a subject plus claims tagged with the token types they may appear in.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Destination(str, Enum):
    ACCESS_TOKEN = "access_token"
    IDENTITY_TOKEN = "id_token"


# Set by the token issuer; identity claims may not override them
RESERVED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "iat", "nbf", "jti", "scope", "client_id"})


@dataclass(frozen=True)
class Claim:
    name: str
    value: Any
    destinations: frozenset[Destination] = frozenset()


@dataclass
class Identity:
    subject: str
    claims: list[Claim] = field(default_factory=list)

    def add_claim(self, name: str, value: Any, *destinations: Destination) -> "Identity":
        """
        Append a claim. A claim without destinations is kept server-side and never
        embedded in any token.
        """
        if name in RESERVED_CLAIMS:
            raise ValueError(f"claim {name!r} is reserved")
        for d in destinations:
            if not isinstance(d, Destination):
                raise TypeError(f"destination must be a Destination, got {d!r}")
        self.claims.append(Claim(name, value, frozenset(destinations)))
        return self

    def claims_for(self, destination: Destination) -> dict[str, Any]:
        """Claims allowed in the given token type, in insertion order. Repeated names become lists."""
        out: dict[str, Any] = {}
        for claim in self.claims:
            if destination not in claim.destinations:
                continue
            if claim.name in out:
                existing = out[claim.name]
                if not isinstance(existing, list):
                    existing = [existing]
                out[claim.name] = existing + [claim.value]
            else:
                out[claim.name] = claim.value
        return out

    def get(self, name: str) -> Any:
        for claim in self.claims:
            if claim.name == name:
                return claim.value
        return None
