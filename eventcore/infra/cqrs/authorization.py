# =============================================================================
# File: eventcore/infra/cqrs/authorization.py
# Description: Permission checks for commands
# =============================================================================

import logging
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from eventcore.common.exceptions.exceptions import UnauthorizedError

log = logging.getLogger("eventcore.cqrs.authorization")

WILDCARD_PERMISSION = "*"


class Actor(BaseModel):
    """Principal issuing a command"""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    roles: FrozenSet[str] = Field(default_factory=frozenset)
    permissions: FrozenSet[str] = Field(default_factory=frozenset)


class Authorizer:
    """
    Grants a command when the actor holds every required permission,
    either directly or through one of its roles.

    Role grants are configured once:
        Authorizer({"clerk": {"order:create", "order:read"}, "admin": {"*"}})
    """

    def __init__(self, role_permissions: Optional[Mapping[str, Iterable[str]]] = None):
        self._role_permissions: Dict[str, FrozenSet[str]] = {
            role: frozenset(perms) for role, perms in (role_permissions or {}).items()
        }

    def effective_permissions(self, actor: Actor) -> Set[str]:
        granted = set(actor.permissions)
        for role in actor.roles:
            granted |= self._role_permissions.get(role, frozenset())
        return granted

    def check(self, actor: Optional[Actor], required: Iterable[str], message_id: Optional[str] = None) -> None:
        required = set(required)
        if not required:
            return
        if actor is None:
            raise UnauthorizedError(
                f"Anonymous caller lacks permissions {sorted(required)}",
                message_id=message_id,
                details={"missing": sorted(required)},
            )

        granted = self.effective_permissions(actor)
        if WILDCARD_PERMISSION in granted:
            return
        missing = required - granted
        if missing:
            log.info(f"Actor {actor.actor_id} denied: missing {sorted(missing)}")
            raise UnauthorizedError(
                f"Actor {actor.actor_id} lacks permissions {sorted(missing)}",
                message_id=message_id,
                details={"actor_id": actor.actor_id, "missing": sorted(missing)},
            )
