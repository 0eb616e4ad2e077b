"""
Authenticated caller, resolved once at the HTTP boundary.

Routers receive a Principal from middleware.auth and pass it down to the
services explicitly; nothing below the routers inspects headers or tokens.
"""
from dataclasses import dataclass, field

from domain.enums import PrincipalKind


@dataclass(frozen=True)
class Principal:
    kind: PrincipalKind
    id: str
    merchant_id: str
    permissions: frozenset = field(default_factory=frozenset)

    def has(self, permission: str) -> bool:
        return permission in self.permissions
