"""
Exception hierarchy for the task-completion payout pipeline.
Each intake error carries the HTTP status and error code returned to the caller.
"""


class GigStreamError(Exception):
    """Base class for pipeline errors."""

    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict:
        body = {'code': self.code, 'message': self.message}
        if self.details is not None:
            body['details'] = self.details
        return {'error': body}


class AuthenticationError(GigStreamError):
    status_code = 401
    code = 'INVALID_API_KEY'


class SignatureError(GigStreamError):
    status_code = 403
    code = 'INVALID_SIGNATURE'


class PlatformForbiddenError(GigStreamError):
    status_code = 403
    code = 'FORBIDDEN'


class PayloadValidationError(GigStreamError):
    status_code = 400
    code = 'INVALID_PAYLOAD'


class NotFoundError(GigStreamError):
    status_code = 404
    code = 'NOT_FOUND'


class PaymentConflictError(GigStreamError):
    """Task is not payable by this worker (wrong owner, missing, or not in a payable state)."""

    status_code = 409
    code = 'PAYMENT_CONFLICT'


class PaymentInProgressError(PaymentConflictError):
    """Another execution already holds the idempotency key."""

    code = 'PAYMENT_IN_PROGRESS'


class PaymentCancelledError(GigStreamError):
    """Retrying stopped on request; nothing was settled and the task stays unpaid."""

    code = 'PAYMENT_CANCELLED'


class PaymentCommitError(GigStreamError):
    """The settlement writes did not land; the payment is not settled and may be retried."""

    code = 'PAYMENT_COMMIT_FAILED'


class LedgerError(GigStreamError):
    code = 'LEDGER_ERROR'
    attempts = 0  # transfer attempts made before the error surfaced


class TransientLedgerError(LedgerError):
    """Network failure, timeout or 5xx from the ledger. Retryable."""

    code = 'LEDGER_UNAVAILABLE'


class LedgerRejectedError(LedgerError):
    """The ledger refused the transfer (validation, insufficient funds). Never retried."""

    code = 'LEDGER_REJECTED'


class ScorerUnavailableError(GigStreamError):
    code = 'SCORER_UNAVAILABLE'
