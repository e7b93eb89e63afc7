"""
Order State Transition Validator
================================

Pure order lifecycle state machine. Decides whether an actor may move an order
from its current status to a target status, validates the transition payload,
mutates the order in memory and appends exactly one action-log entry.

Nothing here touches the store: persistence, compare-and-swap and ledger side
effects live in services/order_service.py.

Usage:
    machine = OrderStateMachine()
    result = machine.apply(order, seller, OrderStatus.APPROVED)
    result.entry.action  # "approved"
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, NamedTuple, Optional, Set, Tuple

from config import Config
from models import ActorRole, DisputeParty, Order, OrderAction, OrderActionEntry, OrderStatus
from utils.helpers import is_blank, utc_now
from utils.order_errors import AuthorizationError, InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Identity and role of whoever performs a transition"""
    user_id: Optional[str]
    name: str
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, name="system", role=ActorRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


class TransitionResult(NamedTuple):
    order: Order
    entry: OrderActionEntry
    previous_status: OrderStatus


_SELLER = frozenset({ActorRole.SELLER})
_ADMIN = frozenset({ActorRole.ADMIN})
_BUYER = frozenset({ActorRole.BUYER})
_PARTIES = frozenset({ActorRole.BUYER, ActorRole.SELLER})


class OrderStateMachine:
    """
    Validates order state transitions per (from_status, to_status, actor_role).

    Terminal states: delivered, rejected, admin_delivered.
    A cancelled order is not terminal for the buyer: it unlocks the buyer's right
    to dispute the cancellation.
    """

    VALID_TRANSITIONS: Dict[OrderStatus, Dict[OrderStatus, FrozenSet[ActorRole]]] = {
        OrderStatus.PENDING: {
            OrderStatus.APPROVED: _SELLER,
            OrderStatus.DELIVERED: _SELLER,
            OrderStatus.REJECTED: _SELLER,
            OrderStatus.CANCELLED: frozenset({ActorRole.SELLER, ActorRole.SYSTEM}),
            OrderStatus.DISPUTED: _PARTIES,
            OrderStatus.ADMIN_DELIVERED: _ADMIN,
        },
        OrderStatus.APPROVED: {
            OrderStatus.DELIVERED: _SELLER,
            OrderStatus.DISPUTED: _PARTIES,
        },
        # Arbitration: admin decides every exit from a dispute
        OrderStatus.DISPUTED: {
            OrderStatus.APPROVED: _ADMIN,
            OrderStatus.REJECTED: _ADMIN,
            OrderStatus.ADMIN_DELIVERED: _ADMIN,
        },
        OrderStatus.CANCELLED: {
            OrderStatus.DISPUTED: _BUYER,
        },
        OrderStatus.DELIVERED: {},
        OrderStatus.REJECTED: {},
        OrderStatus.ADMIN_DELIVERED: {},
    }

    TERMINAL_STATES: Set[OrderStatus] = {
        OrderStatus.DELIVERED,
        OrderStatus.REJECTED,
        OrderStatus.ADMIN_DELIVERED,
    }

    DOWNLOADABLE_STATES: Set[OrderStatus] = {
        OrderStatus.DELIVERED,
        OrderStatus.ADMIN_DELIVERED,
    }

    # Admin decisions are logged under their own action names
    ADMIN_ACTIONS: Dict[OrderStatus, OrderAction] = {
        OrderStatus.APPROVED: OrderAction.ADMIN_APPROVED,
        OrderStatus.REJECTED: OrderAction.ADMIN_REJECTED,
        OrderStatus.ADMIN_DELIVERED: OrderAction.ADMIN_DELIVERED,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: OrderStatus,
        to_status: OrderStatus,
        actor_role: ActorRole,
        order_ref: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Check the transition table.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"Order {order_ref}" if order_ref else "Order"
        allowed_roles = cls.VALID_TRANSITIONS.get(from_status, {}).get(to_status)

        if allowed_roles is None:
            valid_next = [s.value for s in cls.VALID_TRANSITIONS.get(from_status, {})]
            logger.warning(
                f"🚫 INVALID_TRANSITION: {ref} {from_status.value} -> {to_status.value} "
                f"Valid options: {valid_next}"
            )
            return False, (
                f"Invalid transition: {from_status.value} -> {to_status.value}. "
                f"Valid transitions from {from_status.value}: {valid_next}"
            )

        if actor_role not in allowed_roles:
            logger.warning(
                f"🚫 ROLE_NOT_ALLOWED: {ref} {from_status.value} -> {to_status.value} "
                f"by {actor_role.value} (allowed: {sorted(r.value for r in allowed_roles)})"
            )
            return False, (
                f"Role {actor_role.value} may not move an order from "
                f"{from_status.value} to {to_status.value}"
            )

        return True, "Valid state transition"

    @classmethod
    def is_valid_transition(cls, from_status, to_status, actor_role) -> bool:
        """Boolean convenience wrapper accepting enum members or raw values"""
        try:
            is_valid, _ = cls.validate_transition(
                OrderStatus(from_status), OrderStatus(to_status), ActorRole(actor_role)
            )
            return is_valid
        except ValueError:
            return False

    @classmethod
    def action_for(cls, to_status: OrderStatus, actor_role: ActorRole) -> OrderAction:
        if actor_role == ActorRole.ADMIN:
            return cls.ADMIN_ACTIONS[to_status]
        return OrderAction(to_status.value)

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def grants_download(cls, order: Order, actor: Actor) -> bool:
        """Buyer (or an admin) may download the beat once the order is delivered"""
        if OrderStatus(order.status) not in cls.DOWNLOADABLE_STATES:
            return False
        if actor.is_admin:
            return True
        return actor.role == ActorRole.BUYER and actor.user_id is not None and actor.user_id == order.buyer_id

    @staticmethod
    def _check_party(order: Order, actor: Actor):
        if actor.role == ActorRole.SELLER and actor.user_id != order.seller_id:
            raise AuthorizationError(f"{actor.name} is not the seller on order {order.order_ref}")
        if actor.role == ActorRole.BUYER:
            if order.buyer_id is None:
                # Guest checkouts have no account to authenticate a claim
                raise AuthorizationError(f"Guest order {order.order_ref} cannot be disputed by its buyer")
            if actor.user_id != order.buyer_id:
                raise AuthorizationError(f"{actor.name} is not the buyer on order {order.order_ref}")

    @staticmethod
    def _build_note(action: OrderAction, reason: Optional[str], notes: Optional[str]) -> str:
        if action == OrderAction.APPROVED:
            return "Seller approved payment"
        if action == OrderAction.DELIVERED:
            return "Seller confirmed payment and sent the beat"
        if action == OrderAction.REJECTED:
            return f"Rejected: {reason}"
        if action == OrderAction.CANCELLED:
            return f"Cancelled: {reason}"
        if action == OrderAction.DISPUTED:
            return f"Disputed: {reason}"
        if action == OrderAction.ADMIN_APPROVED:
            return f"Admin approved: {notes}" if notes else "Admin approved order"
        if action == OrderAction.ADMIN_REJECTED:
            return f"Admin rejected: {notes}"
        if action == OrderAction.ADMIN_DELIVERED:
            return f"Admin delivered: {notes}"
        return action.value

    def apply(
        self,
        order: Order,
        actor: Actor,
        to_status: OrderStatus,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Validate and apply one transition in memory.

        Raises:
            InvalidTransition: (from, to, role) is not in the table
            AuthorizationError: actor is not the party bound to the order
            ValidationError: required reason or notes are missing
        """
        from_status = OrderStatus(order.status)
        is_valid, message = self.validate_transition(from_status, to_status, actor.role, order.order_ref)
        if not is_valid:
            raise InvalidTransition(from_status, to_status, actor.role, message)

        self._check_party(order, actor)

        action = self.action_for(to_status, actor.role)
        reason = reason.strip() if isinstance(reason, str) else reason
        notes = notes.strip() if isinstance(notes, str) else notes

        if action == OrderAction.REJECTED and is_blank(reason):
            raise ValidationError("A reason is required to reject an order")
        if action == OrderAction.CANCELLED:
            if reason is None:
                reason = Config.DEFAULT_CANCEL_REASON
            elif is_blank(reason):
                raise ValidationError("A reason is required to cancel an order")
        if action == OrderAction.DISPUTED and is_blank(reason):
            raise ValidationError("A dispute reason is required")
        if action in (OrderAction.ADMIN_REJECTED, OrderAction.ADMIN_DELIVERED) and is_blank(notes):
            raise ValidationError(f"Admin notes are required for {action.value}")

        now = now or utc_now()
        self._mutate(order, action, actor, reason, notes, now)
        order.status = to_status.value
        order.updated_at = now

        entry = OrderActionEntry(
            sequence=len(order.action_log) + 1,
            action=action.value,
            actor_name=actor.name,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            at=now,
            note=self._build_note(action, reason, notes),
        )
        order.action_log.append(entry)

        logger.info(
            f"✅ ORDER_TRANSITION: {order.order_ref} {from_status.value} -> {to_status.value} "
            f"by {actor.role.value}:{actor.name}"
        )
        return TransitionResult(order=order, entry=entry, previous_status=from_status)

    @staticmethod
    def _mutate(order: Order, action: OrderAction, actor: Actor, reason, notes, now: datetime):
        if action == OrderAction.APPROVED:
            order.approved_at = now
        elif action == OrderAction.DELIVERED:
            order.delivered_at = now
        elif action == OrderAction.REJECTED:
            order.reject_reason = reason
            order.rejected_at = now
        elif action == OrderAction.CANCELLED:
            order.cancel_reason = reason
            order.cancelled_at = now
        elif action == OrderAction.DISPUTED:
            order.dispute_reason = reason
            order.disputed_by = DisputeParty(actor.role.value).value
            order.disputed_at = now
        elif action == OrderAction.ADMIN_APPROVED:
            if notes:
                order.admin_notes = notes
            order.approved_at = now
        elif action == OrderAction.ADMIN_REJECTED:
            order.admin_notes = notes
            order.rejected_at = now
        elif action == OrderAction.ADMIN_DELIVERED:
            order.admin_notes = notes
            order.delivered_at = now


order_state_machine = OrderStateMachine()
