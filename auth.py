"""
Caller identity handed over by the authentication gateway.

The gateway authenticates the request and forwards the learner id and role in
the X-User-Id / X-User-Role headers. Services never look at the role string;
they receive a Caller and ask it for a capability.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Header

from errors import Forbidden, Unauthorized

MANAGE_ATTEMPTS = "attempts:manage"
MANAGE_PROGRESS = "progress:manage"

ROLE_CAPABILITIES = {
    "admin": frozenset({MANAGE_ATTEMPTS, MANAGE_PROGRESS}),
    "user": frozenset(),
}


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = "user"
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return capability in self.capabilities

    def require(self, capability: str, message: str = "Forbidden"):
        if not self.can(capability):
            raise Forbidden(message)


def caller_for(user_id: str, role: str = "user") -> Caller:
    return Caller(user_id=user_id, role=role, capabilities=ROLE_CAPABILITIES.get(role, frozenset()))


def get_caller(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None)) -> Caller:
    if not x_user_id:
        raise Unauthorized("Unauthorized request")
    return caller_for(x_user_id, (x_user_role or "user").lower())
