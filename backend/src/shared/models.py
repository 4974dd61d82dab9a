"""
Status constants for the payout pipeline.
Task lifecycle: Notified → Verified (approve/flag/reject) → Paid | Failed (dead-lettered)
"""


class PaymentStatus:
    """Task payment statuses. A task moves to PAID exactly once."""
    UNPAID = 'unpaid'
    PAID = 'paid'
    FAILED = 'failed'

    PAYABLE = (UNPAID, FAILED)


class TaskStatus:
    """Work statuses reported by platforms."""
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    DISPUTED = 'disputed'


class Verdict:
    """Verification outcomes."""
    APPROVE = 'approve'
    FLAG = 'flag'
    REJECT = 'reject'


class VerificationStatus:
    """Task verification states stored on the task record."""
    PENDING = 'pending'
    APPROVED = 'approved'
    FLAGGED = 'flagged'
    REJECTED = 'rejected'

    BY_VERDICT = {
        Verdict.APPROVE: APPROVED,
        Verdict.FLAG: FLAGGED,
        Verdict.REJECT: REJECTED,
    }


class RiskLevel:
    """Fraud risk levels."""
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class TransactionStatus:
    """Payout transaction statuses."""
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'


class TransferStatus:
    """Ledger-side transfer states."""
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'


class ScoringMethod:
    HEURISTIC = 'heuristic'
    EXTERNAL_MODEL = 'external-model'


class ReputationCause:
    """Why a worker's reputation changed."""
    TASK_COMPLETED = 'task_completed'
    DISPUTE = 'dispute_filed'
    MANUAL_ADJUSTMENT = 'manual_adjustment'
    RATING_RECEIVED = 'rating_received'
    TASK_LATE = 'task_late'


class LoanStatus:
    ACTIVE = 'active'
    REPAID = 'repaid'
    DEFAULTED = 'defaulted'


class PlatformStatus:
    ACTIVE = 'active'
    SUSPENDED = 'suspended'


class DeadLetterStatus:
    OPEN = 'open'
    RESOLVED = 'resolved'


class AuditAction:
    """Decision points recorded in the audit log."""
    WEBHOOK_VERIFICATION_FAILED = 'webhook_verification_failed'
    WEBHOOK_REJECTED = 'webhook_rejected'
    TASK_VERIFICATION = 'task_verification'
    TASK_PROCESSING_FAILED = 'task_processing_failed'
    PAYMENT_ATTEMPT_FAILED = 'payment_attempt_failed'
    PAYMENT_EXECUTED = 'execute_payment'
    PAYMENT_FAILED = 'payment_failed'
    PAYMENT_DUPLICATE = 'payment_duplicate'
    DEAD_LETTERED = 'webhook_dead_letter_queue'
    DLQ_MANUAL_RETRY = 'dlq_manual_retry'


class ActorType:
    PLATFORM = 'platform'
    WORKER = 'worker'
    SYSTEM = 'system'
