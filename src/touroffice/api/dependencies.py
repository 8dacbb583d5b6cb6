"""Shared FastAPI dependencies (overridable via app.dependency_overrides)."""

from functools import lru_cache

from fastapi import Header

from touroffice.domain.actors import ADMIN, Actor
from touroffice.gateway.registry import GatewayRegistry


@lru_cache(maxsize=1)
def get_gateway_registry() -> GatewayRegistry:
    return GatewayRegistry()


def get_admin_actor(
    x_actor_ref: str | None = Header(default=None, alias="X-Actor-Ref"),
) -> Actor:
    """Staff member performing an admin action (identity is established upstream)."""
    return Actor(ADMIN, x_actor_ref)
