from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ActorRole(str, Enum):
    """Roles carried in the access token's ``role`` claim."""
    STAFF_ADMIN = "staff_admin"
    ORDER_MANAGER = "order_manager"
    DELIVERY_AGENT = "delivery_agent"
    CUSTOMER = "customer"


STAFF_ROLES = frozenset({ActorRole.STAFF_ADMIN, ActorRole.ORDER_MANAGER})


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller of a returns operation.

    Identity is issued by the auth service; the state machine and OTP
    protocol decide what the actor may do.
    """
    actor_id: str
    role: ActorRole
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_delivery_agent(self) -> bool:
        return self.role == ActorRole.DELIVERY_AGENT

    @property
    def is_customer(self) -> bool:
        return self.role == ActorRole.CUSTOMER

    def __str__(self) -> str:
        return f"{self.role.value}:{self.actor_id}"


class PermissionChecker:
    """
    Ownership checks shared by the read endpoints.
    Write permissions are enforced by the state machine and OTP service.
    """

    def __init__(self, actor: Actor):
        self.actor = actor

    def can_view(self, return_request) -> bool:
        """
        Staff see everything, customers see their own returns,
        delivery agents see returns assigned to them.
        """
        if self.actor.is_staff:
            return True
        if self.actor.is_customer:
            return str(return_request.customer_id) == self.actor.actor_id
        if self.actor.is_delivery_agent:
            return return_request.assigned_agent_id == self.actor.actor_id
        return False

    def is_assigned_agent(self, return_request) -> bool:
        return (
            self.actor.is_delivery_agent
            and return_request.assigned_agent_id is not None
            and return_request.assigned_agent_id == self.actor.actor_id
        )
