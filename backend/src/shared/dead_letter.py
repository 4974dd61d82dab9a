"""
Dead Letter Store.
Payouts that exhausted their retries, kept for inspection and manual replay.
Entries are scoped to the platform that sent the original notification.
"""
import uuid
from typing import Any, Dict, Optional

from .exceptions import GigStreamError, NotFoundError, PlatformForbiddenError
from .logging import logger
from .models import ActorType, AuditAction, DeadLetterStatus
from .utils import utc_now


class DeadLetterStore:

    def __init__(self, persistence, audit=None):
        self.persistence = persistence
        self.audit = audit

    def append(
        self,
        platform_id: Optional[str],
        task_id: str,
        worker_id: str,
        idempotency_key: str,
        payload: Dict[str, Any],
        failure_reason: str,
        error_code: str,
        retry_attempts: int,
    ) -> Dict[str, Any]:
        now = utc_now().isoformat()
        entry = {
            'deadLetterId': str(uuid.uuid4()),
            'platformId': platform_id or 'unknown',
            'taskId': task_id,
            'workerId': worker_id,
            'idempotencyKey': idempotency_key,
            'payload': payload,
            'failureReason': failure_reason[:1000],
            'errorCode': error_code,
            'retryAttempts': retry_attempts,
            'requiresManualIntervention': True,
            'status': DeadLetterStatus.OPEN,
            'replayCount': 0,
            'createdAt': now,
            'updatedAt': now,
        }
        self.persistence.put_dead_letter(entry)
        if self.audit:
            self.audit.record(
                platform_id, ActorType.PLATFORM, AuditAction.DEAD_LETTERED,
                'dead_letter', entry['deadLetterId'], False,
                metadata={'taskId': task_id, 'workerId': worker_id, 'retryAttempts': retry_attempts},
                error_message=failure_reason,
            )
        logger.error(f"Dead-lettered payment for task {task_id} after {retry_attempts} attempt(s)")
        return entry

    def list_entries(self, platform_id: str, limit: int = 50, offset: int = 0, status: Optional[str] = DeadLetterStatus.OPEN) -> Dict[str, Any]:
        """One page of a platform's entries, newest first."""
        items, total = self.persistence.list_dead_letters(platform_id, limit=limit, offset=offset, status=status)
        return {
            'items': items,
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + len(items) < total,
        }

    def get(self, dead_letter_id: str, platform_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: Unknown entry
            PlatformForbiddenError: Entry belongs to another platform
        """
        entry = self.persistence.get_dead_letter(dead_letter_id)
        if not entry:
            raise NotFoundError(f"Dead letter {dead_letter_id} not found")
        if platform_id and entry.get('platformId') != platform_id:
            raise PlatformForbiddenError('Dead letter belongs to another platform')
        return entry

    def record_failed_replay(self, dead_letter_id: str, reason: str) -> None:
        self.persistence.record_dead_letter_replay(dead_letter_id, reason)

    def replay(self, dead_letter_id: str, platform_id: str, executor) -> Dict[str, Any]:
        """
        Re-run the Payment Executor with the original payload.
        The entry is resolved only when the payment settles.

        Returns:
            dict: {'success', 'deadLetterId', 'transaction', 'error'}
        """
        entry = self.get(dead_letter_id, platform_id)
        if entry.get('status') == DeadLetterStatus.RESOLVED:
            return {
                'success': True,
                'deadLetterId': dead_letter_id,
                'alreadyResolved': True,
                'transactionId': entry.get('resolvedTransactionId'),
            }

        try:
            result = executor.execute(
                entry['taskId'],
                entry['workerId'],
                platform_id=entry.get('platformId'),
                payload=entry.get('payload'),
                dead_letter_id=dead_letter_id,
            )
        except GigStreamError as e:
            self.record_failed_replay(dead_letter_id, e.message)
            self._audit_replay(entry, False, error=e.message)
            raise

        success = result['status'] in ('paid', 'duplicate')
        transaction = result.get('transaction') or {}
        if success:
            self.persistence.resolve_dead_letter(dead_letter_id, transaction.get('transactionId'))
            logger.info(f"Dead letter {dead_letter_id} resolved by manual replay")
        self._audit_replay(entry, success, transaction_id=transaction.get('transactionId'), error=result.get('error'))

        return {
            'success': success,
            'deadLetterId': dead_letter_id,
            'status': result['status'],
            'attempts': result.get('attempts'),
            'transaction': result.get('transaction'),
            'error': result.get('error'),
        }

    def _audit_replay(self, entry: Dict[str, Any], success: bool, transaction_id: str = None, error: str = None) -> None:
        if not self.audit:
            return
        self.audit.record(
            entry.get('platformId'), ActorType.PLATFORM, AuditAction.DLQ_MANUAL_RETRY,
            'dead_letter', entry['deadLetterId'], success,
            metadata={'taskId': entry['taskId'], 'workerId': entry['workerId'], 'transactionId': transaction_id},
            error_message=error,
        )
