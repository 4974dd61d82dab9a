"""
Task-completion pipeline.
Runs after the webhook acknowledgment: history → task record → verification →
VerificationResult + audit → payment (approved tasks only).
"""
import json
from datetime import timezone
from typing import Any, Dict, List, Optional

from .audit import AuditLogger
from .cache import DynamoIdempotencyStore, InMemoryIdempotencyStore
from .config import config
from .dead_letter import DeadLetterStore
from .dispatch import SqsDispatcher, ThreadPoolDispatcher
from .exceptions import NotFoundError, PaymentConflictError
from .history import WorkerHistoryAggregator
from .ledger import LedgerGateway
from .logging import logger
from .models import ActorType, AuditAction, PaymentStatus, TaskStatus, Verdict, VerificationStatus
from .payments import PaymentExecutor
from .persistence import DynamoPersistence
from .prediction import EarningsForecaster
from .risk import RiskEstimator
from .schemas import TaskCompletion, parse_task_completion
from .utils import DecimalEncoder, parse_timestamp, utc_now
from .verification import VerificationEngine

# Fields a redelivery must repeat exactly; the payout is made from the stored record
IMMUTABLE_TASK_FIELDS = ('amount', 'completedAt', 'completionProof', 'externalTaskId')


class Services:
    """
    Wiring for one Lambda container. Every collaborator can be passed in;
    anything omitted is built from config.
    """

    def __init__(
        self,
        persistence=None,
        ledger=None,
        idempotency_store=None,
        dispatcher=None,
        verification: Optional[VerificationEngine] = None,
        executor: Optional[PaymentExecutor] = None,
    ):
        self.persistence = persistence or DynamoPersistence()
        self.ledger = ledger or LedgerGateway()
        self.audit = AuditLogger(self.persistence)
        self.dead_letters = DeadLetterStore(self.persistence, self.audit)
        self.aggregator = WorkerHistoryAggregator(self.persistence)
        self.risk = RiskEstimator(self.aggregator)
        self.forecaster = EarningsForecaster(self.aggregator)
        self.verification = verification or VerificationEngine()

        if idempotency_store is None:
            idempotency_store = DynamoIdempotencyStore() if config.IDEMPOTENCY_TABLE else InMemoryIdempotencyStore()
        self.executor = executor or PaymentExecutor(
            self.persistence,
            self.ledger,
            idempotency_store=idempotency_store,
            audit=self.audit,
            dead_letters=self.dead_letters,
            on_settled=self.invalidate_worker,
        )
        self._dispatcher = dispatcher

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            if config.TASK_COMPLETION_QUEUE_URL:
                self._dispatcher = SqsDispatcher()
            else:
                self._dispatcher = ThreadPoolDispatcher(lambda message: process_message(message, self))
        return self._dispatcher

    def invalidate_worker(self, worker_id: str) -> None:
        """
        Retire every cached aggregate for a worker (task completed, paid, or loan
        repaid). Local entries are dropped; the version bump retires the copies
        other containers hold.
        """
        self.persistence.bump_worker_version(worker_id)
        self.aggregator.invalidate(worker_id)
        self.risk.invalidate(worker_id)
        self.forecaster.invalidate(worker_id)


_services: Optional[Services] = None


def get_services() -> Services:
    """Container-wide instance, reused across warm invocations."""
    global _services
    if _services is None:
        _services = Services()
    return _services


def build_message(task: TaskCompletion, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Queue message carrying the validated notification."""
    return {
        'payload': task.to_payload(),
        'platformId': task.platform_id,
        'receivedAt': utc_now().isoformat(),
        'requestId': request_id,
    }


def task_record(task: TaskCompletion) -> Dict[str, Any]:
    now = utc_now().isoformat()
    payload = task.to_payload()
    return {
        'taskId': task.task_ref,
        'externalTaskId': task.external_task_id,
        'workerId': task.worker_id,
        'platformId': task.platform_id,
        'amount': task.amount,
        'completedAt': task.completed_at.astimezone(timezone.utc).isoformat(),
        'completionProof': payload.get('completionProof', {}),
        'rating': task.rating,
        'metadata': task.metadata,
        'status': TaskStatus.COMPLETED,
        'paymentStatus': PaymentStatus.UNPAID,
        'verificationStatus': VerificationStatus.PENDING,
        'createdAt': now,
        'updatedAt': now,
    }


def changed_fields(stored: Dict[str, Any], task: TaskCompletion) -> List[str]:
    """Fields of a redelivered notification that differ from the stored task record."""
    incoming = task_record(task)
    changed = []
    for name in IMMUTABLE_TASK_FIELDS:
        if name == 'completedAt':
            same = parse_timestamp(stored.get(name)) == parse_timestamp(incoming.get(name))
        else:
            same = _as_json(stored.get(name)) == _as_json(incoming.get(name))
        if not same:
            changed.append(name)
    return changed


def _as_json(value: Any) -> Any:
    # Stored records carry Decimals where the notification carried floats
    return json.loads(json.dumps(value, cls=DecimalEncoder))


def process_message(message: Dict[str, Any], services: Services) -> Dict[str, Any]:
    """Entry point for one queued message."""
    task = parse_task_completion(message['payload'], platform_id=message.get('platformId'))
    return process_task_completion(task, services)


def process_task_completion(task: TaskCompletion, services: Services) -> Dict[str, Any]:
    """
    Verify a completed task and pay it when approved.

    Business outcomes (unknown worker, reject, flag, payment conflict, dead-letter)
    are returned and audited. Unexpected errors are audited and re-raised so the
    queue redelivers the message; the task stays unpaid.
    """
    try:
        return _process(task, services)
    except Exception as e:
        logger.exception(f"Processing failed for task {task.task_ref}")
        services.audit.record(
            task.platform_id, ActorType.PLATFORM, AuditAction.TASK_PROCESSING_FAILED,
            'task', task.task_ref, False,
            metadata={'workerId': task.worker_id, 'stage': 'pipeline'},
            error_message=str(e),
        )
        raise


def _process(task: TaskCompletion, services: Services) -> Dict[str, Any]:
    persistence = services.persistence

    try:
        history = services.aggregator.snapshot(task.worker_id)
    except NotFoundError as e:
        logger.warning(f"Task {task.task_ref} references unknown worker {task.worker_id}")
        services.audit.record(
            task.platform_id, ActorType.PLATFORM, AuditAction.TASK_PROCESSING_FAILED,
            'task', task.task_ref, False,
            metadata={'workerId': task.worker_id, 'stage': 'history'},
            error_message=e.message,
        )
        return {'taskId': task.task_ref, 'status': 'failed', 'reason': e.message}

    if not persistence.create_task(task_record(task)):
        existing = persistence.get_task(task.task_ref) or {}
        if existing.get('workerId') != task.worker_id:
            services.audit.record(
                task.platform_id, ActorType.PLATFORM, AuditAction.TASK_PROCESSING_FAILED,
                'task', task.task_ref, False,
                metadata={'workerId': task.worker_id, 'stage': 'task_record'},
                error_message='Task already exists for a different worker',
            )
            return {'taskId': task.task_ref, 'status': 'conflict', 'reason': 'Task belongs to another worker'}
        if existing.get('paymentStatus') == PaymentStatus.PAID:
            logger.info(f"Task {task.task_ref} redelivered after payment, skipping")
            return {'taskId': task.task_ref, 'status': 'already_paid', 'transactionId': existing.get('transactionId')}
        changed = changed_fields(existing, task)
        if changed:
            logger.warning(f"Task {task.task_ref} redelivered with different {changed}, refusing")
            services.audit.record(
                task.platform_id, ActorType.PLATFORM, AuditAction.TASK_PROCESSING_FAILED,
                'task', task.task_ref, False,
                metadata={'workerId': task.worker_id, 'stage': 'task_record', 'changedFields': changed},
                error_message='Redelivered notification does not match the stored task',
            )
            return {'taskId': task.task_ref, 'status': 'conflict', 'reason': f"Changed fields: {', '.join(changed)}"}
        logger.info(f"Task {task.task_ref} redelivered, re-verifying")

    result = services.verification.verify(task, history)
    persistence.put_verification_result(result)
    persistence.update_task_verification(
        task.task_ref, VerificationStatus.BY_VERDICT[result['verdict']], result['verificationId'],
    )
    services.audit.record(
        task.platform_id, ActorType.PLATFORM, AuditAction.TASK_VERIFICATION,
        'task', task.task_ref, result['verdict'] != Verdict.REJECT,
        metadata={
            'verificationId': result['verificationId'],
            'verdict': result['verdict'],
            'confidence': result['confidence'],
            'riskLevel': result['riskLevel'],
            'patterns': [p['name'] for p in result['patterns']],
            'fastPathErrors': result['fastPathErrors'],
            'signals': result['signals'],
            'method': result['method'],
            'latencyMs': result['latencyMs'],
        },
        error_message=None if result['verdict'] != Verdict.REJECT else result['reason'],
    )
    services.invalidate_worker(task.worker_id)

    summary = {
        'taskId': task.task_ref,
        'verificationId': result['verificationId'],
        'verdict': result['verdict'],
        'confidence': result['confidence'],
    }
    if result['verdict'] != Verdict.APPROVE:
        summary['status'] = 'flagged' if result['verdict'] == Verdict.FLAG else 'rejected'
        return summary

    try:
        payment = services.executor.execute(
            task.task_ref, task.worker_id, platform_id=task.platform_id, payload=task.to_payload(),
            amount=task.amount,
        )
    except PaymentConflictError as e:
        # Duplicate delivery racing an in-flight or settled payout
        logger.info(f"Payment for task {task.task_ref} short-circuited: {e.message}")
        summary['status'] = 'conflict'
        summary['reason'] = e.message
        return summary

    summary['status'] = payment['status']
    summary['attempts'] = payment.get('attempts')
    if payment.get('transaction'):
        summary['transactionId'] = payment['transaction'].get('transactionId')
    if payment.get('deadLetterId'):
        summary['deadLetterId'] = payment['deadLetterId']
    return summary
