"""
Persistence Gateway backed by DynamoDB.

Tables (partition key / GSIs):
    tasks             taskId        byWorker(workerId, completedAt)
    workers           workerId
    platforms         platformId    byApiKeyHash(apiKeyHash)
    transactions      transactionId (the payment idempotency key)
    verifications     verificationId byTask(taskId, createdAt)
    reputation events eventId       byWorker(workerId, createdAt)
    loans             loanId        byWorker(workerId, createdAt)
    audit log         auditId
    dead letters      deadLetterId  byPlatform(platformId, createdAt)
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from . import dynamo
from .config import config
from .exceptions import PaymentCommitError
from .logging import logger
from .models import DeadLetterStatus, LoanStatus, PaymentStatus
from .utils import utc_now


class DynamoPersistence:
    """CRUD-style access to every record the pipeline reads or writes."""

    def __init__(self, tables: Optional[Dict[str, str]] = None):
        names = {
            'tasks': config.TASKS_TABLE,
            'workers': config.WORKERS_TABLE,
            'platforms': config.PLATFORMS_TABLE,
            'transactions': config.TRANSACTIONS_TABLE,
            'verifications': config.VERIFICATIONS_TABLE,
            'reputation_events': config.REPUTATION_EVENTS_TABLE,
            'loans': config.LOANS_TABLE,
            'audit_log': config.AUDIT_LOG_TABLE,
            'dead_letters': config.DEAD_LETTER_TABLE,
        }
        names.update(tables or {})
        self.tables = names

    # ------------------------------------------------------------------
    # Platforms / workers
    # ------------------------------------------------------------------

    def get_platform_by_api_key_hash(self, api_key_hash: str) -> Optional[Dict[str, Any]]:
        items = dynamo.query(
            self.tables['platforms'],
            index_name='byApiKeyHash',
            key_condition=Key('apiKeyHash').eq(api_key_hash),
            limit=1,
        )
        return items[0] if items else None

    def get_platform(self, platform_id: str) -> Optional[Dict[str, Any]]:
        return dynamo.get_item(self.tables['platforms'], {'platformId': platform_id})

    def get_worker(self, worker_id: str) -> Optional[Dict[str, Any]]:
        return dynamo.get_item(self.tables['workers'], {'workerId': worker_id})

    def get_worker_version(self, worker_id: str) -> int:
        """Counter bumped whenever the worker's cached aggregates go stale."""
        worker = dynamo.get_item(self.tables['workers'], {'workerId': worker_id}, consistent=True) or {}
        return int(worker.get('statsVersion', 0))

    def bump_worker_version(self, worker_id: str) -> bool:
        return dynamo.update_item(
            self.tables['workers'],
            {'workerId': worker_id},
            'ADD statsVersion :one',
            {':one': 1},
            condition_expression='attribute_exists(workerId)',
        )

    # ------------------------------------------------------------------
    # Tasks and verification
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return dynamo.get_item(self.tables['tasks'], {'taskId': task_id}, consistent=True)

    def create_task(self, task: Dict[str, Any]) -> bool:
        """Insert the task if it does not exist yet. Returns False for a redelivered notification."""
        return dynamo.put_item(
            self.tables['tasks'], task,
            condition_expression='attribute_not_exists(taskId)',
        )

    def update_task_verification(self, task_id: str, verification_status: str, verification_id: str) -> None:
        dynamo.update_item(
            self.tables['tasks'],
            key={'taskId': task_id},
            update_expression='SET verificationStatus = :vs, lastVerificationId = :vid, updatedAt = :now',
            expression_values={
                ':vs': verification_status,
                ':vid': verification_id,
                ':now': utc_now().isoformat(),
            },
        )

    def put_verification_result(self, result: Dict[str, Any]) -> None:
        dynamo.put_item(self.tables['verifications'], result)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return dynamo.get_item(self.tables['transactions'], {'transactionId': transaction_id}, consistent=True)

    def commit_payment(
        self,
        transaction: Dict[str, Any],
        reputation_event: Dict[str, Any],
        audit_entry: Dict[str, Any],
    ) -> bool:
        """
        Settle a payment in one DynamoDB transaction: Transaction record, Task → paid,
        ReputationEvent, AuditLogEntry and the worker's running reputation.

        Returns:
            True when committed, False when the transaction already exists (settled earlier)

        Raises:
            PaymentCommitError: Any other failure; nothing was written
        """
        now = utc_now().isoformat()
        transact_items = [
            {
                'Put': {
                    'TableName': self.tables['transactions'],
                    'Item': dynamo.serialize_item(transaction),
                    'ConditionExpression': 'attribute_not_exists(transactionId)',
                }
            },
            {
                'Update': {
                    'TableName': self.tables['tasks'],
                    'Key': dynamo.serialize_item({'taskId': transaction['taskId']}),
                    'UpdateExpression': 'SET paymentStatus = :paid, transactionId = :txn, paidAt = :now, updatedAt = :now',
                    'ConditionExpression': 'workerId = :wid AND paymentStatus IN (:unpaid, :failed)',
                    'ExpressionAttributeValues': dynamo.serialize_item({
                        ':paid': PaymentStatus.PAID,
                        ':txn': transaction['transactionId'],
                        ':now': now,
                        ':wid': transaction['workerId'],
                        ':unpaid': PaymentStatus.UNPAID,
                        ':failed': PaymentStatus.FAILED,
                    }),
                }
            },
            {
                'Put': {
                    'TableName': self.tables['reputation_events'],
                    'Item': dynamo.serialize_item(reputation_event),
                    'ConditionExpression': 'attribute_not_exists(eventId)',
                }
            },
            {
                'Put': {
                    'TableName': self.tables['audit_log'],
                    'Item': dynamo.serialize_item(audit_entry),
                }
            },
            {
                'Update': {
                    'TableName': self.tables['workers'],
                    'Key': dynamo.serialize_item({'workerId': transaction['workerId']}),
                    'UpdateExpression': 'SET reputationScore = :score, updatedAt = :now ADD totalTasksCompleted :one, statsVersion :one',
                    'ExpressionAttributeValues': dynamo.serialize_item({
                        ':score': reputation_event['newScore'],
                        ':now': now,
                        ':one': 1,
                    }),
                }
            },
        ]

        try:
            dynamo.transact_write(transact_items)
            return True
        except ClientError as e:
            reasons = e.response.get('CancellationReasons') or []
            if reasons and reasons[0].get('Code') == 'ConditionalCheckFailed':
                logger.info(f"Transaction {transaction['transactionId']} already committed")
                return False
            logger.error(f"Payment commit failed for task {transaction['taskId']}: {e}")
            raise PaymentCommitError(f"Payment commit failed: {e}")

    def mark_task_payment_failed(self, task_id: str, reason: str) -> bool:
        """Task → failed, unless it was paid in the meantime."""
        return dynamo.update_item(
            self.tables['tasks'],
            key={'taskId': task_id},
            update_expression='SET paymentStatus = :failed, paymentError = :error, updatedAt = :now',
            expression_values={
                ':failed': PaymentStatus.FAILED,
                ':error': reason[:500],
                ':now': utc_now().isoformat(),
                ':paid': PaymentStatus.PAID,
            },
            condition_expression='paymentStatus <> :paid',
        )

    # ------------------------------------------------------------------
    # Audit log and dead letters
    # ------------------------------------------------------------------

    def put_audit_entry(self, entry: Dict[str, Any]) -> None:
        # Append-only: an audit id is never written twice
        dynamo.put_item(self.tables['audit_log'], entry, condition_expression='attribute_not_exists(auditId)')

    def put_dead_letter(self, entry: Dict[str, Any]) -> None:
        dynamo.put_item(self.tables['dead_letters'], entry)

    def get_dead_letter(self, dead_letter_id: str) -> Optional[Dict[str, Any]]:
        return dynamo.get_item(self.tables['dead_letters'], {'deadLetterId': dead_letter_id}, consistent=True)

    def list_dead_letters(
        self,
        platform_id: str,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = DeadLetterStatus.OPEN,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Newest first. Returns (page, total matching)."""
        items = dynamo.query(
            self.tables['dead_letters'],
            index_name='byPlatform',
            key_condition=Key('platformId').eq(platform_id),
            filter_expression=Attr('status').eq(status) if status else None,
            scan_forward=False,
        )
        return items[offset:offset + limit], len(items)

    def resolve_dead_letter(self, dead_letter_id: str, transaction_id: Optional[str]) -> bool:
        return dynamo.update_item(
            self.tables['dead_letters'],
            key={'deadLetterId': dead_letter_id},
            update_expression=(
                'SET #status = :resolved, requiresManualIntervention = :false, '
                'resolvedTransactionId = :txn, resolvedAt = :now, updatedAt = :now'
            ),
            expression_values={
                ':resolved': DeadLetterStatus.RESOLVED,
                ':false': False,
                ':txn': transaction_id or '',
                ':now': utc_now().isoformat(),
            },
            expression_names={'#status': 'status'},
        )

    def record_dead_letter_replay(self, dead_letter_id: str, error: str) -> None:
        dynamo.update_item(
            self.tables['dead_letters'],
            key={'deadLetterId': dead_letter_id},
            update_expression='SET lastReplayError = :err, updatedAt = :now ADD replayCount :one',
            expression_values={
                ':err': error[:500],
                ':now': utc_now().isoformat(),
                ':one': 1,
            },
        )

    # ------------------------------------------------------------------
    # Aggregate read for history / risk / forecast
    # ------------------------------------------------------------------

    def get_active_loans(self, worker_id: str) -> List[Dict[str, Any]]:
        return dynamo.query(
            self.tables['loans'],
            index_name='byWorker',
            key_condition=Key('workerId').eq(worker_id),
            filter_expression=Attr('status').eq(LoanStatus.ACTIVE),
        )

    def get_worker_activity(self, worker_id: str, days: int = 30) -> Dict[str, Any]:
        """
        Everything the scoring stages need about one worker.

        Returns:
            dict: {
                'worker': worker record or None,
                'tasks': tasks with completedAt inside the window (newest first),
                'loans': all loans,
                'reputationEvents': events inside the window,
            }
        """
        since = (utc_now() - timedelta(days=days)).isoformat()
        worker = self.get_worker(worker_id)
        tasks = dynamo.query(
            self.tables['tasks'],
            index_name='byWorker',
            key_condition=Key('workerId').eq(worker_id) & Key('completedAt').gte(since),
            scan_forward=False,
        )
        loans = dynamo.query(
            self.tables['loans'],
            index_name='byWorker',
            key_condition=Key('workerId').eq(worker_id),
        )
        events = dynamo.query(
            self.tables['reputation_events'],
            index_name='byWorker',
            key_condition=Key('workerId').eq(worker_id) & Key('createdAt').gte(since),
        )
        return {
            'worker': worker,
            'tasks': tasks,
            'loans': loans,
            'reputationEvents': events,
        }
