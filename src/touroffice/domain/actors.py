"""Who performed an operation (recorded on every activity log row)."""

from __future__ import annotations

from dataclasses import dataclass

from touroffice.domain.errors import ValidationError

CUSTOMER = "customer"
ADMIN = "admin"
SYSTEM_TYPE = "system"

ACTOR_TYPES = (CUSTOMER, ADMIN, SYSTEM_TYPE)


@dataclass(frozen=True)
class Actor:
    actor_type: str
    ref: str | None = None

    def __post_init__(self) -> None:
        if self.actor_type not in ACTOR_TYPES:
            raise ValidationError(
                f"Unknown actor type: {self.actor_type}", code="invalid_actor"
            )


SYSTEM = Actor(SYSTEM_TYPE)
