# loyalty_core/services/exceptions.py


class ServiceError(Exception):
    """Base class for service-layer errors.

    ``code`` is stable and meant for clients to branch on; ``detail`` is the
    human-readable message.
    """

    code = "service_error"
    status_code = 400

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.code
        super().__init__(self.detail)


# --- Validation ---

class DomainValidationError(ServiceError):
    """Malformed input. Never retried."""

    code = "validation_error"
    status_code = 422


class IdempotencyKeyConflict(DomainValidationError):
    """The idempotency key was already used for a different intent."""

    code = "idempotency_key_conflict"


# --- Not found / authorization ---

class ResourceNotFoundError(ServiceError):
    code = "not_found"
    status_code = 404


class ProgramNotFound(ResourceNotFoundError):
    code = "program_not_found"


class EnrollmentNotFound(ResourceNotFoundError):
    code = "enrollment_not_found"


class ApprovalRequestNotFound(ResourceNotFoundError):
    code = "approval_request_not_found"


class ForbiddenError(ServiceError):
    code = "forbidden"
    status_code = 403


# --- Conflicts (user-actionable, not retried) ---

class ConflictError(ServiceError):
    code = "conflict"
    status_code = 409


class AlreadyEnrolled(ConflictError):
    code = "already_enrolled"


class AlreadyResponded(ConflictError):
    code = "already_responded"


class InvalidTransition(ConflictError):
    code = "invalid_transition"


class RequestExpired(ConflictError):
    code = "request_expired"
    status_code = 410


# --- Concurrency (retried inside the ledger, bounded) ---

class ConcurrencyError(ServiceError):
    code = "concurrency_error"
    status_code = 503


class ConcurrentModification(ConcurrencyError):
    code = "concurrent_modification"


# --- Ledger integrity (surfaced, not retried) ---

class LedgerIntegrityError(ServiceError):
    code = "integrity_error"
    status_code = 422


class InsufficientBalance(LedgerIntegrityError):
    code = "insufficient_balance"


class CardNotFound(LedgerIntegrityError):
    code = "card_not_found"
    status_code = 404


class CardInactive(LedgerIntegrityError):
    code = "card_inactive"
    status_code = 409


# --- Security (surfaced and audited, never retried) ---

class SecurityError(ServiceError):
    code = "security_error"
    status_code = 401


class InvalidSignature(SecurityError):
    code = "invalid_signature"


class QRExpired(SecurityError):
    code = "qr_expired"


class ReplayDetected(SecurityError):
    code = "replay_detected"
    status_code = 409
