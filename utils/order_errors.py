"""
Marketplace error taxonomy
==========================

Every domain failure raised by the order core derives from ``MarketplaceError``.
Infrastructure failures are translated into ``StoreWriteFailure`` at the session
boundary so callers never have to catch raw SQLAlchemy exceptions.
"""

from typing import List, Optional


class MarketplaceError(Exception):
    """Base class for all marketplace domain errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Required input is missing, blank or malformed; nothing was mutated"""
    pass


class InvalidTransition(MarketplaceError):
    """The (from_status, to_status, actor_role) triple is not in the transition table"""

    def __init__(self, from_status, to_status, actor_role, message: Optional[str] = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.actor_role = getattr(actor_role, "value", actor_role)
        super().__init__(
            message
            or f"Invalid transition {self.from_status} -> {self.to_status} for role {self.actor_role}"
        )


class AuthorizationError(MarketplaceError):
    """Actor role is allowed but the actor is not the party bound to the order"""
    pass


class NotFound(MarketplaceError):
    """Referenced order, purchase, withdrawal or dispute does not exist"""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InsufficientFunds(MarketplaceError):
    """Debit would take a wallet's available balance below zero"""

    def __init__(self, user_id: str, requested_cents: int):
        self.user_id = user_id
        self.requested_cents = requested_cents
        super().__init__(f"Insufficient available balance for {user_id}: requested {requested_cents} cents")


class StoreWriteFailure(MarketplaceError):
    """The store rejected or failed a write; the unit of work was rolled back"""
    pass


class ConcurrentUpdateError(StoreWriteFailure):
    """Compare-and-swap on a document version lost against a concurrent writer"""

    def __init__(self, kind: str, identifier: str, expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        self.kind = kind
        self.identifier = identifier
        self.expected_version = expected_version
        self.actual_version = actual_version
        detail = ""
        if expected_version is not None:
            detail = f" (expected version {expected_version}, found {actual_version})"
        super().__init__(f"Concurrent update on {kind} {identifier}{detail}; re-fetch and retry")


class PartialLedgerFailure(MarketplaceError):
    """A multi-step ledger workflow failed after some legs were already committed"""

    def __init__(self, operation_id: str, completed_steps: List[str], failed_step: str,
                 cause: Optional[BaseException] = None):
        self.operation_id = operation_id
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.cause = cause
        super().__init__(
            f"Operation {operation_id} failed at step '{failed_step}' after "
            f"{', '.join(completed_steps) or 'no steps'}; manual reconciliation required"
        )
