"""Domain exceptions for the escrow lifecycle core.

These exceptions are framework-agnostic and represent business rule
violations. Each carries a stable ``code`` and an ``http_status`` hint so the
surrounding application layer can translate them without knowing every
subclass.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    http_status = 400

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input Errors ---


class ValidationError(EscrowError):
    """Raised for malformed input (never retried)."""

    http_status = 400

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.errors = errors or []


class UnprocessableEntityError(EscrowError):
    """Raised when well-formed input is semantically unusable."""

    http_status = 422

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="UNPROCESSABLE_ENTITY")


# --- Lookup Errors ---


class NotFoundError(EscrowError):
    http_status = 404

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code)


class EscrowNotFoundError(NotFoundError):
    """Raised when an escrow ID does not exist."""

    def __init__(self, escrow_id: str) -> None:
        super().__init__(f"Escrow not found: {escrow_id}", code="ESCROW_NOT_FOUND")
        self.escrow_id = escrow_id


class ConditionNotFoundError(NotFoundError):
    def __init__(self, escrow_id: str, condition_id: str) -> None:
        super().__init__(
            f"Condition {condition_id} not found on escrow {escrow_id}",
            code="CONDITION_NOT_FOUND",
        )
        self.condition_id = condition_id


class DisputeNotFoundError(NotFoundError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            f"No dispute found for escrow: {escrow_id}",
            code="DISPUTE_NOT_FOUND",
        )


class WebhookNotFoundError(NotFoundError):
    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Webhook subscription not found: {subscription_id}",
            code="WEBHOOK_NOT_FOUND",
        )


# --- Authorization Errors ---


class ForbiddenError(EscrowError):
    """Raised when a role or ownership check fails."""

    http_status = 403

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FORBIDDEN")


# --- State Errors ---


class InvalidStateError(EscrowError):
    """Raised when an operation is not legal in the escrow's current status."""

    http_status = 400

    def __init__(self, message: str, code: str = "INVALID_STATE") -> None:
        super().__init__(message=message, code=code)


class InvalidStateTransitionError(InvalidStateError):
    """Raised when the transition table denies a status change.

    Example: PENDING -> COMPLETED (must be funded first)
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


# --- Conflict Errors ---


class ConflictError(EscrowError):
    http_status = 409

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(message=message, code=code)


class DisputeConflictError(ConflictError):
    """Raised for a duplicate dispute or an already-resolved dispute."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="DISPUTE_CONFLICT")


# --- Ledger Errors ---


class LedgerError(EscrowError):
    """Raised when on-chain settlement fails.

    ``retryable`` failures are retried with bounded backoff before the
    error is surfaced to the caller.
    """

    http_status = 502

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message=message, code="LEDGER_ERROR")
        self.retryable = retryable
        self.tx_hash = tx_hash
