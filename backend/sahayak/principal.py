"""Actors that can act on a booking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .core.enums import ActorRole


@dataclass(frozen=True)
class Actor:
    """
    The authenticated caller, or an internal system process.

    ``provider_id`` is the provider profile the user operates, when the
    caller is a provider; bookings reference providers by that id.
    """

    id: str
    role: ActorRole
    provider_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_operator(self) -> bool:
        """Admins and internal processes."""
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @property
    def acting_provider_id(self) -> Optional[str]:
        if self.role != ActorRole.PROVIDER:
            return None
        return self.provider_id or self.id

    @classmethod
    def system(cls, name: str) -> "Actor":
        """Internal actor, recorded in the ledger as ``system:<name>``."""
        return cls(id=f"system:{name}", role=ActorRole.SYSTEM)


WEBHOOK_ACTOR = Actor.system("webhook")
PAYMENT_VERIFY_ACTOR = Actor.system("payment-verify")
RECONCILIATION_ACTOR = Actor.system("reconciliation")
