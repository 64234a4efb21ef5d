"""
Return Request State Machine

This module is the SINGLE SOURCE OF TRUTH for return status transitions.
All status changes must go through ``ReturnStateMachine.transition``.

- Which statuses are reachable from each status
- Which roles may perform each move
- Preconditions (assigned agent, verified pickup OTP)
- Audit trail entry per transition
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from app.core.exceptions import Forbidden, IllegalTransition, PreconditionFailed
from app.core.permissions import Actor, ActorRole
from app.db_types import ensure_aware, utcnow
from app.models.return_request import ReturnRequest, ReturnStatusHistory


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

class ReturnStatus:
    """Return status constants - use these instead of strings."""
    REQUESTED = "requested"
    APPROVED = "approved"
    PICKUP_ASSIGNED = "pickup_assigned"
    PICKUP_REJECTED = "pickup_rejected"
    PICKED_UP = "picked_up"
    RECEIVED = "received"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    REJECTED = "rejected"

    @classmethod
    def all(cls) -> List[str]:
        return [
            cls.REQUESTED, cls.APPROVED, cls.PICKUP_ASSIGNED,
            cls.PICKUP_REJECTED, cls.PICKED_UP, cls.RECEIVED,
            cls.PARTIALLY_REFUNDED, cls.REFUNDED, cls.REJECTED,
        ]


# =============================================================================
# TRANSITION RULES
# =============================================================================

_STAFF = frozenset({ActorRole.STAFF_ADMIN, ActorRole.ORDER_MANAGER})
_PICKUP = frozenset({ActorRole.DELIVERY_AGENT, ActorRole.STAFF_ADMIN, ActorRole.ORDER_MANAGER})

# current_status -> [allowed next statuses]
RETURN_TRANSITIONS: Dict[str, List[str]] = {
    ReturnStatus.REQUESTED: [
        ReturnStatus.APPROVED,
        ReturnStatus.REJECTED,
    ],
    ReturnStatus.APPROVED: [
        ReturnStatus.PICKUP_ASSIGNED,
        ReturnStatus.REJECTED,
    ],
    ReturnStatus.PICKUP_ASSIGNED: [
        ReturnStatus.PICKED_UP,
        ReturnStatus.PICKUP_REJECTED,
    ],
    ReturnStatus.PICKUP_REJECTED: [
        ReturnStatus.APPROVED,          # Re-approve for another pickup attempt
        ReturnStatus.PICKUP_ASSIGNED,   # Assign a different agent
        ReturnStatus.REJECTED,
    ],
    ReturnStatus.PICKED_UP: [
        ReturnStatus.RECEIVED,
    ],
    ReturnStatus.RECEIVED: [
        ReturnStatus.PARTIALLY_REFUNDED,
        ReturnStatus.REFUNDED,
    ],
    ReturnStatus.PARTIALLY_REFUNDED: [],  # Terminal - case closed after a partial refund
    ReturnStatus.REFUNDED: [],            # Terminal
    ReturnStatus.REJECTED: [],            # Terminal
}

# Roles allowed to move a return out of each status
TRANSITION_ROLES: Dict[str, FrozenSet[ActorRole]] = {
    ReturnStatus.REQUESTED: _STAFF,
    ReturnStatus.APPROVED: _STAFF,
    ReturnStatus.PICKUP_ASSIGNED: _PICKUP,
    ReturnStatus.PICKUP_REJECTED: _STAFF,
    ReturnStatus.PICKED_UP: _STAFF,
    ReturnStatus.RECEIVED: _STAFF,
}

TERMINAL_STATUSES = frozenset({
    ReturnStatus.PARTIALLY_REFUNDED,
    ReturnStatus.REFUNDED,
    ReturnStatus.REJECTED,
})

REFUND_STATUSES = frozenset({
    ReturnStatus.PARTIALLY_REFUNDED,
    ReturnStatus.REFUNDED,
})

# Human-readable messages for customer-facing timelines
STATUS_MESSAGES: Dict[str, str] = {
    ReturnStatus.REQUESTED: "Return request submitted",
    ReturnStatus.APPROVED: "Return approved - awaiting pickup assignment",
    ReturnStatus.PICKUP_ASSIGNED: "Pickup agent assigned",
    ReturnStatus.PICKUP_REJECTED: "Pickup could not be completed",
    ReturnStatus.PICKED_UP: "Items picked up",
    ReturnStatus.RECEIVED: "Items received at warehouse",
    ReturnStatus.PARTIALLY_REFUNDED: "Partial refund issued",
    ReturnStatus.REFUNDED: "Refund issued",
    ReturnStatus.REJECTED: "Return rejected",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed by the table (ignores roles)."""
    return new_status in RETURN_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return list(RETURN_TRANSITIONS.get(current_status, []))


def role_can_act(current_status: str, role: ActorRole) -> bool:
    return role in TRANSITION_ROLES.get(current_status, frozenset())


def allowed_transitions(current_status: str, role: ActorRole) -> List[str]:
    """Statuses the given role may move a return to from ``current_status``."""
    if not role_can_act(current_status, role):
        return []
    return get_allowed_transitions(current_status)


def get_status_message(status: str) -> str:
    return STATUS_MESSAGES.get(status, status)


# =============================================================================
# DERIVED STATE (pure)
# =============================================================================

def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return status in TERMINAL_STATUSES


def is_currently_active(return_request: ReturnRequest) -> bool:
    """Is the return still moving through the workflow?"""
    return not is_terminal(return_request.status)


def has_active_pickup_code(return_request: ReturnRequest) -> bool:
    return return_request.pickup_otp_hash is not None


def is_expired(return_request: ReturnRequest, now: Optional[datetime] = None) -> bool:
    """
    Is the current pickup code unusable?

    True when a code is on file and it is past its expiry or out of attempts.
    """
    if not has_active_pickup_code(return_request):
        return False
    now = now or utcnow()
    expires_at = ensure_aware(return_request.pickup_otp_expires_at)
    if expires_at is not None and now >= expires_at:
        return True
    return return_request.pickup_otp_attempts_remaining <= 0


def is_otp_verified(return_request: ReturnRequest) -> bool:
    """Has a pickup code been verified since the most recent issue?"""
    verified_at = ensure_aware(return_request.pickup_otp_verified_at)
    if verified_at is None:
        return False
    issued_at = ensure_aware(return_request.pickup_otp_issued_at)
    return issued_at is None or verified_at >= issued_at


def resend_seconds_remaining(return_request: ReturnRequest, now: Optional[datetime] = None) -> int:
    available_at = ensure_aware(return_request.pickup_otp_resend_available_at)
    if available_at is None:
        return 0
    now = now or utcnow()
    remaining = (available_at - now).total_seconds()
    return max(0, int(remaining + 0.999))


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

@dataclass(frozen=True)
class TransitionResult:
    """What a successful transition changed."""
    return_id: str
    from_status: str
    to_status: str
    history_entry: ReturnStatusHistory
    refunded_amount: Optional[Decimal] = None


class ReturnStateMachine:
    """
    Validates and applies status transitions to a loaded ReturnRequest.

    Persistence and locking are the caller's concern (see ReturnService);
    this class only mutates the in-memory entity.
    """

    def validate(
        self,
        return_request: ReturnRequest,
        target_status: str,
        actor: Actor,
        assigned_agent: Optional[dict] = None,
    ) -> None:
        """
        Raise if ``actor`` may not move ``return_request`` to ``target_status``.

        Checked in order: transition table, role, agent ownership, preconditions.
        """
        current_status = return_request.status

        if target_status not in RETURN_TRANSITIONS:
            raise IllegalTransition(f"Unknown return status '{target_status}'")

        if current_status == target_status:
            raise IllegalTransition(
                f"Return {return_request.return_id} is already '{current_status}'"
            )

        if not can_transition(current_status, target_status):
            allowed = get_allowed_transitions(current_status)
            if not allowed:
                raise IllegalTransition(
                    f"Return in '{current_status}' status cannot be modified. This is a terminal state."
                )
            raise IllegalTransition(
                f"Cannot change return from '{current_status}' to '{target_status}'. "
                f"Allowed transitions: {', '.join(allowed)}"
            )

        if not role_can_act(current_status, actor.role):
            raise Forbidden(
                f"Role '{actor.role.value}' cannot move a return from '{current_status}' to '{target_status}'"
            )

        if actor.is_delivery_agent and return_request.assigned_agent_id != actor.actor_id:
            raise Forbidden(
                f"Return {return_request.return_id} is not assigned to agent {actor.actor_id}"
            )

        if target_status == ReturnStatus.PICKUP_ASSIGNED and not assigned_agent:
            raise PreconditionFailed("A pickup agent must be supplied to assign pickup")

        if target_status == ReturnStatus.PICKED_UP and not is_otp_verified(return_request):
            raise PreconditionFailed(
                "Pickup OTP has not been verified for this return"
            )

    def transition(
        self,
        return_request: ReturnRequest,
        target_status: str,
        actor: Actor,
        note: Optional[str] = None,
        assigned_agent: Optional[dict] = None,
        refunded_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Transition a return to a new status.

        1. Validates the move (table, role, preconditions)
        2. Appends an audit entry
        3. Updates the status and status-specific fields

        ``refunded_amount`` must already be computed and bounded by the
        refund calculator for refund targets.
        """
        self.validate(return_request, target_status, actor, assigned_agent)

        now = now or utcnow()
        from_status = return_request.status

        entry = ReturnStatusHistory(
            sequence=len(return_request.status_history) + 1,
            from_status=from_status,
            status=target_status,
            note=note or get_status_message(target_status),
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            created_at=now,
        )
        return_request.status_history.append(entry)
        return_request.status = target_status

        if target_status == ReturnStatus.PICKUP_ASSIGNED:
            agent = dict(assigned_agent)
            agent["assigned_at"] = now.isoformat()
            return_request.assigned_pickup_agent = agent
            return_request.assigned_agent_id = str(agent["agent_id"])

        elif target_status == ReturnStatus.PICKED_UP:
            # The verified code has been used
            clear_pickup_code(return_request)
            return_request.pickup_otp_verified_at = None

        elif target_status in REFUND_STATUSES:
            return_request.refunded_amount = (
                (return_request.refunded_amount or Decimal("0")) + (refunded_amount or Decimal("0"))
            )
            return_request.refunded_at = now

        return TransitionResult(
            return_id=return_request.return_id,
            from_status=from_status,
            to_status=target_status,
            history_entry=entry,
            refunded_amount=refunded_amount,
        )


def clear_pickup_code(return_request: ReturnRequest) -> None:
    """Invalidate any pickup code on file."""
    return_request.pickup_otp_hash = None
    return_request.pickup_otp_expires_at = None
    return_request.pickup_otp_attempts_remaining = 0


def initial_history_entry(actor: Actor, note: Optional[str] = None) -> ReturnStatusHistory:
    """First audit row written when a customer submits a return."""
    return ReturnStatusHistory(
        sequence=1,
        from_status=None,
        status=ReturnStatus.REQUESTED,
        note=note or get_status_message(ReturnStatus.REQUESTED),
        actor_id=actor.actor_id,
        actor_role=actor.role.value,
        created_at=utcnow(),
    )
