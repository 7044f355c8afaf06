"""
Payroll Recon - FastAPI Dependencies

Shared dependencies for the acting operator and capability checks.

Authentication happens upstream: the gateway forwards the operator id in
``X-Actor-Id`` and a comma separated capability list in
``X-Actor-Capabilities``. This module only trusts and checks them.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Depends, Header, HTTPException, status

from payroll_recon.utils.error_handling import AuthorizationException


PAYROLL_MANAGE = "payroll:manage"
PAYROLL_MASTER_DATA = "payroll:master-data"


@dataclass(frozen=True)
class Actor:
    """The operator performing a request."""
    actor_id: str
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_capabilities: Optional[str] = Header(None),
) -> Actor:
    """
    Get the acting operator from the gateway headers.

    Raises:
        HTTPException: 401 if no actor id was forwarded
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    capabilities = frozenset(
        c.strip() for c in (x_actor_capabilities or "").split(",") if c.strip()
    )
    return Actor(actor_id=x_actor_id.strip(), capabilities=capabilities)


def require_capability(capability: str):
    """
    Dependency factory for capability checks.

    Usage:
        @router.post("/periods/{period_id}/approve")
        async def approve(actor: Actor = Depends(require_capability("payroll:manage"))):
            ...
    """
    async def capability_checker(
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        if not actor.can(capability):
            raise AuthorizationException(
                message=f"Access denied. Required capability: {capability}",
                required_permission=capability,
            )
        return actor

    return capability_checker


require_payroll_manager = require_capability(PAYROLL_MANAGE)
require_master_data_editor = require_capability(PAYROLL_MASTER_DATA)
