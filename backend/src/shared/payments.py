"""
Payment Executor.
Pays an approved task exactly once per (task, worker) pair.

Flow:
    1. Claim the idempotency key (atomic check-and-mark)
    2. Re-check the task is unpaid and owned by the worker
    3. Compute fee and net amount
    4. Transfer via the Ledger Gateway with bounded retry and exponential backoff
    5. Commit Transaction + Task paid + ReputationEvent + AuditLogEntry atomically
    6. On exhausted retries: DeadLetterEntry, audit, task marked failed
"""
import hashlib
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, Optional, Tuple

from .audit import AuditLogger
from .cache import COMPLETED, InMemoryIdempotencyStore
from .config import config
from .dead_letter import DeadLetterStore
from .exceptions import (
    LedgerError,
    LedgerRejectedError,
    PaymentCancelledError,
    PaymentConflictError,
    PaymentInProgressError,
    TransientLedgerError,
)
from .ledger import resolve_wallets
from .logging import logger
from .models import (
    ActorType,
    AuditAction,
    PaymentStatus,
    ReputationCause,
    TransactionStatus,
    TransferStatus,
)
from .utils import CENT, to_decimal, utc_now

MAX_REPUTATION = 1000
DEFAULT_REPUTATION = 100


def payment_idempotency_key(task_id: str, worker_id: str) -> str:
    """Deterministic key for one (task, worker) payout."""
    return hashlib.sha256(f"{task_id}-{worker_id}-payment".encode('utf-8')).hexdigest()


def calculate_payment_split(amount: Decimal, fee_percent: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Calculate the fee and the amount paid to the worker.

    Returns:
        tuple: (fee, net_amount). The fee rounds down so the worker never loses a cent to rounding.
    """
    fee = (amount * fee_percent / Decimal('100')).quantize(CENT, rounding=ROUND_DOWN)
    return fee, amount - fee


@dataclass(frozen=True)
class RetryPolicy:
    """Delay before attempt n+1 is base_delay * 2**(n-1), capped at max_delay."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_config(cls) -> 'RetryPolicy':
        return cls(
            max_attempts=config.PAYMENT_MAX_ATTEMPTS,
            base_delay=config.PAYMENT_BASE_DELAY_SECONDS,
            max_delay=config.PAYMENT_MAX_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


class PaymentExecutor:
    """
    Executes payouts. The idempotency store is the single point of mutual
    exclusion between duplicate deliveries of the same task.
    """

    def __init__(
        self,
        persistence,
        ledger,
        idempotency_store=None,
        audit: Optional[AuditLogger] = None,
        dead_letters: Optional[DeadLetterStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        fee_percent: Optional[Decimal] = None,
        attempt_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        on_settled: Optional[Callable[[str], Any]] = None,
    ):
        self.persistence = persistence
        self.ledger = ledger
        self.idempotency_store = idempotency_store if idempotency_store is not None else InMemoryIdempotencyStore()
        self.audit = audit or AuditLogger(persistence)
        self.dead_letters = dead_letters or DeadLetterStore(persistence, self.audit)
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.fee_percent = to_decimal(fee_percent if fee_percent is not None else config.PAYMENT_FEE_PERCENT)
        self.attempt_timeout = attempt_timeout if attempt_timeout is not None else config.LEDGER_ATTEMPT_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else config.LEDGER_POLL_INTERVAL_SECONDS
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self.on_settled = on_settled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        task_id: str,
        worker_id: str,
        platform_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        dead_letter_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        """
        Pay a task.

        Args:
            task_id: Task being paid
            worker_id: Worker who must own the task
            platform_id: Paying platform
            payload: Original notification, kept on any dead-letter entry
            dead_letter_id: Set when replaying a dead-letter entry
            amount: Verified amount; the stored task must match it

        Returns:
            dict: {'status': 'paid' | 'duplicate' | 'failed', 'transaction', 'attempts', ...}

        Raises:
            PaymentInProgressError: Another execution holds the key
            PaymentConflictError: Task missing, owned by someone else, not payable, or not the verified amount
            PaymentCommitError: Transfer succeeded but the settlement writes did not land
            PaymentCancelledError: cancel() was called during backoff; the task stays unpaid
        """
        key = payment_idempotency_key(task_id, worker_id)
        existing = self.idempotency_store.begin(key)
        if existing is not None:
            if existing.get('state') == COMPLETED:
                logger.info(f"Payment {key[:12]} already completed, returning prior result")
                self._audit_duplicate(key, task_id, worker_id, platform_id)
                return {**existing['result'], 'status': 'duplicate'}
            raise PaymentInProgressError(f"Payment for task {task_id} is already in progress")

        try:
            result = self._execute_claimed(key, task_id, worker_id, platform_id, payload, dead_letter_id, amount)
        except BaseException:
            self.idempotency_store.release(key)
            raise

        if result['status'] == 'failed':
            # A failed payout may be replayed from the dead-letter store
            self.idempotency_store.release(key)
        else:
            self.idempotency_store.complete(key, result)
        return result

    def cancel(self) -> None:
        """Stop retrying at the next backoff; the task is left unpaid."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _execute_claimed(self, key, task_id, worker_id, platform_id, payload, dead_letter_id, verified_amount=None) -> Dict[str, Any]:
        task = self.persistence.get_task(task_id)
        if not task or task.get('workerId') != worker_id:
            raise PaymentConflictError(f"Task {task_id} is not owned by worker {worker_id}")

        platform_id = platform_id or task.get('platformId')
        if task.get('paymentStatus') == PaymentStatus.PAID:
            transaction = self.persistence.get_transaction(task.get('transactionId') or key)
            logger.info(f"Task {task_id} already paid by {task.get('transactionId')}")
            self._audit_duplicate(key, task_id, worker_id, platform_id)
            return {'status': 'duplicate', 'transaction': transaction, 'attempts': 0}
        if task.get('paymentStatus', PaymentStatus.UNPAID) not in PaymentStatus.PAYABLE:
            raise PaymentConflictError(f"Task {task_id} is not payable ({task.get('paymentStatus')})")

        amount = to_decimal(task.get('amount'))
        if verified_amount is not None and to_decimal(verified_amount) != amount:
            raise PaymentConflictError(f"Task {task_id} stored amount {amount} differs from verified amount {verified_amount}")
        fee, net_amount = calculate_payment_split(amount, self.fee_percent)
        context = {
            'key': key,
            'task_id': task_id,
            'worker_id': worker_id,
            'platform_id': platform_id,
            'amount': amount,
            'fee': fee,
            'net_amount': net_amount,
            'payload': payload or {'taskId': task_id, 'workerId': worker_id, 'platformId': platform_id},
            'dead_letter_id': dead_letter_id,
        }

        worker = self.persistence.get_worker(worker_id) or {'workerId': worker_id}
        attempts = 0
        try:
            wallets = resolve_wallets(self._platform(platform_id), worker)
            transfer, attempts = self._transfer_with_retry(context, wallets)
        except LedgerError as e:
            attempts = e.attempts
            return self._escalate(context, e, attempts)

        return self._settle(context, worker, transfer, attempts)

    def _platform(self, platform_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not platform_id:
            return None
        return self.persistence.get_platform(platform_id)

    def _transfer_with_retry(self, context: Dict[str, Any], wallets: Dict[str, str]) -> Tuple[Dict[str, Any], int]:
        """
        Up to max_attempts tries. Only TransientLedgerError is retried; the last
        error is re-raised with the attempt count attached.
        """
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                transfer = self._attempt_transfer(context, wallets)
                return transfer, attempt
            except LedgerRejectedError as e:
                logger.error(f"Payment {context['key'][:12]} rejected by ledger: {e.message}")
                e.attempts = attempt
                raise
            except TransientLedgerError as e:
                logger.warning(
                    f"Payment {context['key'][:12]} attempt {attempt}/{policy.max_attempts} failed: {e.message}"
                )
                self.audit.record(
                    context['platform_id'], ActorType.PLATFORM, AuditAction.PAYMENT_ATTEMPT_FAILED,
                    'task', context['task_id'], False,
                    metadata={'attempt': attempt, 'idempotencyKey': context['key']},
                    error_message=e.message,
                )
                if attempt >= policy.max_attempts:
                    e.attempts = attempt
                    raise
                if self._pause(policy.delay_for(attempt)):
                    logger.warning(f"Payment {context['key'][:12]} cancelled after {attempt} attempts")
                    raise PaymentCancelledError(f"Payment for task {context['task_id']} cancelled after {attempt} attempt(s)")

    def _attempt_transfer(self, context: Dict[str, Any], wallets: Dict[str, str]) -> Dict[str, Any]:
        """One transfer attempt bounded by the attempt timeout, including settlement polling."""
        deadline = time.monotonic() + self.attempt_timeout
        transfer = self.ledger.transfer(
            wallets['from'], wallets['to'], context['net_amount'], context['key'],
            timeout=self.attempt_timeout,
        )
        status = transfer.get('status', TransferStatus.PENDING)
        while status == TransferStatus.PENDING:
            if time.monotonic() + self.poll_interval > deadline:
                raise TransientLedgerError(f"Transfer {transfer['transferId']} still pending at attempt deadline")
            if self._pause(self.poll_interval):
                raise PaymentCancelledError(f"Transfer {transfer['transferId']} polling cancelled")
            polled = self.ledger.get_status(transfer['transferId'], timeout=max(deadline - time.monotonic(), 0.1))
            status = polled['status']
            transfer = {**transfer, 'status': status, 'statusRef': polled.get('statusRef') or transfer.get('statusRef')}

        if status == TransferStatus.FAILED:
            raise LedgerRejectedError(f"Transfer {transfer['transferId']} failed on the ledger")
        return transfer

    def _pause(self, delay: float) -> bool:
        """Backoff sleep. Returns True when cancellation was requested."""
        if self._sleep is not None:
            self._sleep(delay)
            return self.cancel_event.is_set()
        return self.cancel_event.wait(delay)

    def _settle(self, context: Dict[str, Any], worker: Dict[str, Any], transfer: Dict[str, Any], attempts: int) -> Dict[str, Any]:
        now = utc_now().isoformat()
        transaction = {
            'transactionId': context['key'],
            'idempotencyKey': context['key'],
            'taskId': context['task_id'],
            'workerId': context['worker_id'],
            'platformId': context['platform_id'],
            'amount': context['amount'],
            'fee': context['fee'],
            'netAmount': context['net_amount'],
            'feePercent': self.fee_percent,
            'transferId': transfer['transferId'],
            'settlementRef': transfer.get('statusRef'),
            'status': TransactionStatus.CONFIRMED,
            'attempts': attempts,
            'createdAt': now,
            'updatedAt': now,
        }

        previous = worker.get('reputationScore')
        previous = int(previous) if previous is not None else DEFAULT_REPUTATION
        new_score = min(MAX_REPUTATION, previous + config.REPUTATION_TASK_DELTA)
        reputation_event = {
            'eventId': f"{context['key']}-reputation",
            'workerId': context['worker_id'],
            'taskId': context['task_id'],
            'delta': new_score - previous,
            'previousScore': previous,
            'newScore': new_score,
            'cause': ReputationCause.TASK_COMPLETED,
            'createdAt': now,
        }
        audit_entry = self.audit.build_entry(
            context['platform_id'], ActorType.PLATFORM, AuditAction.PAYMENT_EXECUTED,
            'transaction', context['key'], True,
            metadata={
                'taskId': context['task_id'],
                'workerId': context['worker_id'],
                'amount': context['amount'],
                'fee': context['fee'],
                'netAmount': context['net_amount'],
                'transferId': transfer['transferId'],
                'attempts': attempts,
                'replayOf': context['dead_letter_id'],
            },
        )

        if not self.persistence.commit_payment(transaction, reputation_event, audit_entry):
            existing = self.persistence.get_transaction(context['key'])
            self._audit_duplicate(context['key'], context['task_id'], context['worker_id'], context['platform_id'])
            return {'status': 'duplicate', 'transaction': existing, 'attempts': attempts}

        logger.info(
            f"Paid task {context['task_id']}: {context['net_amount']} to worker {context['worker_id']} "
            f"(fee {context['fee']}, {attempts} attempt(s))"
        )
        if self.on_settled:
            self.on_settled(context['worker_id'])
        return {'status': 'paid', 'transaction': transaction, 'attempts': attempts}

    def _escalate(self, context: Dict[str, Any], error: LedgerError, attempts: int) -> Dict[str, Any]:
        """Exhausted or rejected: dead-letter, audit, and mark the task failed."""
        reason = error.message
        self.persistence.mark_task_payment_failed(context['task_id'], reason)
        self.audit.record(
            context['platform_id'], ActorType.PLATFORM, AuditAction.PAYMENT_FAILED,
            'task', context['task_id'], False,
            metadata={'attempts': attempts, 'idempotencyKey': context['key'], 'errorCode': error.code},
            error_message=reason,
        )

        if context['dead_letter_id']:
            self.dead_letters.record_failed_replay(context['dead_letter_id'], reason)
            dead_letter_id = context['dead_letter_id']
        else:
            entry = self.dead_letters.append(
                platform_id=context['platform_id'],
                task_id=context['task_id'],
                worker_id=context['worker_id'],
                idempotency_key=context['key'],
                payload=context['payload'],
                failure_reason=reason,
                error_code=error.code,
                retry_attempts=attempts,
            )
            dead_letter_id = entry['deadLetterId']

        logger.error(f"Payment for task {context['task_id']} failed after {attempts} attempt(s): {reason}")
        return {
            'status': 'failed',
            'transaction': None,
            'attempts': attempts,
            'error': reason,
            'deadLetterId': dead_letter_id,
        }

    def _audit_duplicate(self, key: str, task_id: str, worker_id: str, platform_id: Optional[str]) -> None:
        self.audit.record(
            platform_id, ActorType.PLATFORM, AuditAction.PAYMENT_DUPLICATE,
            'transaction', key, True,
            metadata={'taskId': task_id, 'workerId': worker_id},
        )
