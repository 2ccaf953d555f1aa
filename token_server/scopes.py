"""
Scope registry. Unknown scopes are dropped silently, never rejected here.
"""
from typing import Iterable


class ScopeRegistry:
    def __init__(self, scopes: Iterable[str]):
        self._scopes = frozenset(scopes)

    def filter(self, requested: Iterable[str]) -> frozenset[str]:
        """Return only the requested scopes that are registered."""
        return frozenset(s for s in requested if self.contains(s))

    def contains(self, scope: str) -> bool:
        return scope in self._scopes

    def __iter__(self):
        return iter(sorted(self._scopes))
