"""
Execution context: who is acting and on which tenants.

Background jobs run with the service context; API callers with a tenant token
get a context scoped to the tenants in their token. Every operation calls
`authorize()` for the tenant it touches instead of trusting the caller.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from autopilot.errors import TenantAccessError


@dataclass(frozen=True)
class ExecutionContext:
    actor: str
    tenant_ids: frozenset = field(default_factory=frozenset)
    is_service: bool = False

    @classmethod
    def service(cls, actor: str = "system:scheduler") -> "ExecutionContext":
        return cls(actor=actor, is_service=True)

    @classmethod
    def for_tenants(cls, actor: str, tenant_ids) -> "ExecutionContext":
        return cls(actor=actor, tenant_ids=frozenset(uuid.UUID(str(t)) for t in tenant_ids))

    def can_access(self, tenant_id: Optional[uuid.UUID]) -> bool:
        if self.is_service:
            return True
        return tenant_id is not None and tenant_id in self.tenant_ids

    def authorize(self, tenant_id: Optional[uuid.UUID]) -> None:
        if not self.can_access(tenant_id):
            raise TenantAccessError(f"{self.actor} is not allowed to act on tenant {tenant_id}")
