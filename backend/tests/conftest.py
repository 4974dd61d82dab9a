"""
Shared fixtures: in-memory Persistence and Ledger gateways, seeded platform and worker.
"""
import copy
import os
import sys
import threading
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from shared.auth import hash_api_key  # noqa: E402
from shared.cache import InMemoryIdempotencyStore, TTLStore  # noqa: E402
from shared.exceptions import PaymentCommitError, TransientLedgerError  # noqa: E402
from shared.models import DeadLetterStatus, LoanStatus, PaymentStatus, TransferStatus  # noqa: E402
from shared.payments import PaymentExecutor, RetryPolicy  # noqa: E402
from shared.pipeline import Services  # noqa: E402
from shared.utils import parse_timestamp, utc_now  # noqa: E402

PLATFORM_ID = 'plat-1'
API_KEY = 'key-1'
WEBHOOK_SECRET = 'secret-1'
WORKER_ID = 'worker-1'


class InMemoryPersistence:
    """Same surface as DynamoPersistence, backed by dicts. `calls` records write order."""

    def __init__(self):
        self.lock = threading.RLock()
        self.platforms = {}
        self.workers = {}
        self.tasks = {}
        self.transactions = {}
        self.verifications = {}
        self.reputation_events = {}
        self.loans = {}
        self.audit_log = []
        self.dead_letters = {}
        self.calls = []

    # Platforms / workers

    def get_platform_by_api_key_hash(self, api_key_hash):
        for platform in self.platforms.values():
            if platform.get('apiKeyHash') == api_key_hash:
                return copy.deepcopy(platform)
        return None

    def get_platform(self, platform_id):
        return copy.deepcopy(self.platforms.get(platform_id))

    def get_worker(self, worker_id):
        return copy.deepcopy(self.workers.get(worker_id))

    def get_worker_version(self, worker_id):
        return self.workers.get(worker_id, {}).get('statsVersion', 0)

    def bump_worker_version(self, worker_id):
        with self.lock:
            worker = self.workers.get(worker_id)
            if worker is None:
                return False
            worker['statsVersion'] = worker.get('statsVersion', 0) + 1
            return True

    # Tasks and verification

    def get_task(self, task_id):
        with self.lock:
            return copy.deepcopy(self.tasks.get(task_id))

    def create_task(self, task):
        with self.lock:
            self.calls.append('create_task')
            if task['taskId'] in self.tasks:
                return False
            self.tasks[task['taskId']] = copy.deepcopy(task)
            return True

    def update_task_verification(self, task_id, verification_status, verification_id):
        with self.lock:
            self.calls.append('update_task_verification')
            self.tasks[task_id]['verificationStatus'] = verification_status
            self.tasks[task_id]['lastVerificationId'] = verification_id

    def put_verification_result(self, result):
        self.calls.append('put_verification_result')
        self.verifications[result['verificationId']] = copy.deepcopy(result)

    # Payments

    def get_transaction(self, transaction_id):
        return copy.deepcopy(self.transactions.get(transaction_id))

    def commit_payment(self, transaction, reputation_event, audit_entry):
        with self.lock:
            self.calls.append('commit_payment')
            if transaction['transactionId'] in self.transactions:
                return False
            task = self.tasks.get(transaction['taskId'])
            if (
                not task
                or task.get('workerId') != transaction['workerId']
                or task.get('paymentStatus') not in PaymentStatus.PAYABLE
            ):
                raise PaymentCommitError('Payment commit failed: task condition')
            self.transactions[transaction['transactionId']] = copy.deepcopy(transaction)
            task['paymentStatus'] = PaymentStatus.PAID
            task['transactionId'] = transaction['transactionId']
            self.reputation_events[reputation_event['eventId']] = copy.deepcopy(reputation_event)
            self.audit_log.append(copy.deepcopy(audit_entry))
            worker = self.workers.setdefault(transaction['workerId'], {'workerId': transaction['workerId']})
            worker['reputationScore'] = reputation_event['newScore']
            worker['totalTasksCompleted'] = worker.get('totalTasksCompleted', 0) + 1
            worker['statsVersion'] = worker.get('statsVersion', 0) + 1
            return True

    def mark_task_payment_failed(self, task_id, reason):
        with self.lock:
            task = self.tasks.get(task_id)
            if not task or task.get('paymentStatus') == PaymentStatus.PAID:
                return False
            task['paymentStatus'] = PaymentStatus.FAILED
            task['paymentError'] = reason
            return True

    # Audit log and dead letters

    def put_audit_entry(self, entry):
        with self.lock:
            self.audit_log.append(copy.deepcopy(entry))

    def put_dead_letter(self, entry):
        self.dead_letters[entry['deadLetterId']] = copy.deepcopy(entry)

    def get_dead_letter(self, dead_letter_id):
        return copy.deepcopy(self.dead_letters.get(dead_letter_id))

    def list_dead_letters(self, platform_id, limit=50, offset=0, status=DeadLetterStatus.OPEN):
        items = [
            copy.deepcopy(e) for e in self.dead_letters.values()
            if e['platformId'] == platform_id and (status is None or e['status'] == status)
        ]
        items.sort(key=lambda e: e['createdAt'], reverse=True)
        return items[offset:offset + limit], len(items)

    def resolve_dead_letter(self, dead_letter_id, transaction_id):
        entry = self.dead_letters[dead_letter_id]
        entry['status'] = DeadLetterStatus.RESOLVED
        entry['requiresManualIntervention'] = False
        entry['resolvedTransactionId'] = transaction_id or ''
        return True

    def record_dead_letter_replay(self, dead_letter_id, error):
        entry = self.dead_letters[dead_letter_id]
        entry['lastReplayError'] = error
        entry['replayCount'] = entry.get('replayCount', 0) + 1

    # Aggregates

    def get_active_loans(self, worker_id):
        return [
            copy.deepcopy(loan) for loan in self.loans.values()
            if loan['workerId'] == worker_id and loan.get('status') == LoanStatus.ACTIVE
        ]

    def get_worker_activity(self, worker_id, days=30):
        since = utc_now() - timedelta(days=days)
        with self.lock:
            tasks = [
                copy.deepcopy(t) for t in self.tasks.values()
                if t['workerId'] == worker_id and parse_timestamp(t.get('completedAt')) >= since
            ]
        tasks.sort(key=lambda t: parse_timestamp(t['completedAt']), reverse=True)
        return {
            'worker': self.get_worker(worker_id),
            'tasks': tasks,
            'loans': [copy.deepcopy(loan) for loan in self.loans.values() if loan['workerId'] == worker_id],
            'reputationEvents': [
                copy.deepcopy(e) for e in self.reputation_events.values()
                if e['workerId'] == worker_id and parse_timestamp(e.get('createdAt')) >= since
            ],
        }

    # Helpers for tests

    def audit_actions(self):
        return [entry['action'] for entry in self.audit_log]

    def add_task(self, task_id, amount, completed_at, worker_id=WORKER_ID, **fields):
        self.tasks[task_id] = {
            'taskId': task_id,
            'workerId': worker_id,
            'platformId': PLATFORM_ID,
            'amount': amount,
            'completedAt': completed_at.isoformat(),
            'status': 'completed',
            'paymentStatus': PaymentStatus.PAID,
            'verificationStatus': 'approved',
            **fields,
        }


class FakeLedger:
    """
    Scripted ledger. Each transfer() pops the next outcome: an exception to raise,
    or a transfer status. get_status() pops from status_updates.
    """

    def __init__(self, outcomes=None, status_updates=None, delay=0.0):
        self.outcomes = list(outcomes or [])
        self.status_updates = list(status_updates or [])
        self.delay = delay
        self.transfers = []
        self.status_calls = []
        self._lock = threading.Lock()

    def transfer(self, from_wallet, to_wallet, amount, idempotency_key, timeout=None):
        if self.delay:
            threading.Event().wait(self.delay)
        with self._lock:
            self.transfers.append({
                'from': from_wallet,
                'to': to_wallet,
                'amount': amount,
                'idempotencyKey': idempotency_key,
            })
            outcome = self.outcomes.pop(0) if self.outcomes else TransferStatus.CONFIRMED
            number = len(self.transfers)
        if isinstance(outcome, Exception):
            raise outcome
        return {'transferId': f"tr-{number}", 'statusRef': f"0xhash{number}", 'status': outcome}

    def get_status(self, transfer_id, timeout=None):
        self.status_calls.append(transfer_id)
        status = self.status_updates.pop(0) if self.status_updates else TransferStatus.CONFIRMED
        return {'status': status, 'statusRef': f"0x{transfer_id}"}


class RecordingDispatcher:

    def __init__(self, accept=True):
        self.accept = accept
        self.messages = []

    def dispatch(self, message):
        self.messages.append(message)
        return self.accept


def transient(message='ledger unavailable'):
    return TransientLedgerError(message)


@pytest.fixture
def persistence():
    store = InMemoryPersistence()
    store.platforms[PLATFORM_ID] = {
        'platformId': PLATFORM_ID,
        'name': 'Acme Deliveries',
        'apiKeyHash': hash_api_key(API_KEY),
        'webhookSecret': WEBHOOK_SECRET,
        'webhooksEnabled': True,
        'status': 'active',
        'walletId': 'wallet-platform',
    }
    store.workers[WORKER_ID] = {
        'workerId': WORKER_ID,
        'reputationScore': 850,
        'totalTasksCompleted': 40,
        'walletAddress': '0xworkerwallet',
        'createdAt': (utc_now() - timedelta(days=120)).isoformat(),
    }
    return store


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def sleeps():
    return []


def make_executor(persistence, ledger, sleeps, services=None, **kwargs):
    params = {
        'idempotency_store': InMemoryIdempotencyStore(),
        'retry_policy': RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0),
        'fee_percent': 0,
        'attempt_timeout': 2.0,
        'poll_interval': 0.01,
        'sleep': sleeps.append,
    }
    if services is not None:
        params.update(audit=services.audit, dead_letters=services.dead_letters, on_settled=services.invalidate_worker)
    params.update(kwargs)
    return PaymentExecutor(persistence, ledger, **params)


@pytest.fixture
def executor(persistence, ledger, sleeps):
    return make_executor(persistence, ledger, sleeps)


@pytest.fixture
def services(persistence, ledger, sleeps):
    built = Services(
        persistence=persistence,
        ledger=ledger,
        idempotency_store=InMemoryIdempotencyStore(),
        dispatcher=RecordingDispatcher(),
    )
    built.executor = make_executor(persistence, ledger, sleeps, services=built)
    return built


@pytest.fixture
def fake_clock():
    class Clock:
        now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return Clock()


@pytest.fixture
def ttl_store(fake_clock):
    return TTLStore(60, clock=fake_clock)
