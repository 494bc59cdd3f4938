"""
Service layer errors.

Every error carries a stable ``code`` and an HTTP status so the API layer can
map it without inspecting the message.
"""


class ServiceError(Exception):
    code = "SERVICE_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str = None, status_code: int = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.code, "detail": self.message}


# Input

class ValidationError(ServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, reason: str):
        super().__init__(f"Validation failed - {field}: {reason}")
        self.field = field
        self.reason = reason


class PaymentVerificationError(ValidationError):
    code = "PAYMENT_NOT_VERIFIED"


class RangeError(ValidationError):
    code = "OUT_OF_RANGE"


class LimitExceededError(ServiceError):
    code = "MAX_ENTRIES_EXCEEDED"
    status_code = 400

    def __init__(self, current: int, additional: int, maximum: int):
        super().__init__(
            f"Max entries exceeded: {current} current + {additional} new = "
            f"{current + additional}, max allowed: {maximum}"
        )


class InsufficientBalanceError(ServiceError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400

    def __init__(self, requested: float, available: float):
        super().__init__(f"Insufficient balance: {requested} requested, {available} available")


class OwnershipError(ServiceError):
    code = "NOT_OWNER"
    status_code = 403


# Lookup

class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")


# Lifecycle

class StateError(ServiceError):
    code = "INVALID_STATE"
    status_code = 409


class ClosedError(StateError):
    code = "RAFFLE_CLOSED"


class NotReadyError(StateError):
    code = "NOT_READY"


class InsufficientParticipantsError(StateError):
    code = "INSUFFICIENT_PARTICIPANTS"

    def __init__(self, raffle_id: str, participants: int, minimum: int):
        super().__init__(
            f"Raffle {raffle_id} closed with {participants} participants "
            f"(minimum {minimum}); cancelled and queued for refund"
        )


class CooldownError(StateError):
    code = "COOLDOWN_ACTIVE"


class WindowClosedError(StateError):
    code = "WITHDRAWAL_WINDOW_CLOSED"


class DrawFailedError(StateError):
    code = "DRAW_FAILED"


class ConcurrencyError(ServiceError):
    code = "CONCURRENT_UPDATE"
    status_code = 409


# Idempotency

class DuplicateError(ServiceError):
    code = "DUPLICATE"
    status_code = 409


class DuplicateTxError(DuplicateError):
    code = "DUPLICATE_TRANSACTION"

    def __init__(self, tx_ref: str):
        super().__init__(f"Transaction reference already used: {tx_ref}")


class AlreadyWithdrawnError(DuplicateError):
    code = "ALREADY_WITHDRAWN"


# External collaborators

class ExternalServiceError(ServiceError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502


class TransientExternalError(ExternalServiceError):
    code = "EXTERNAL_SERVICE_UNAVAILABLE"


class PermanentExternalError(ExternalServiceError):
    code = "EXTERNAL_SERVICE_REJECTED"
