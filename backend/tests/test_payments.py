"""
Tests for the Payment Executor, the Ledger Gateway and the atomic payment commit.
"""
import json
import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests
from botocore.exceptions import ClientError

from conftest import PLATFORM_ID, WORKER_ID, FakeLedger, make_executor, transient
from shared.cache import InMemoryIdempotencyStore
from shared.config import config
from shared.exceptions import (
    LedgerRejectedError,
    PaymentCancelledError,
    PaymentCommitError,
    PaymentConflictError,
    PaymentInProgressError,
    TransientLedgerError,
)
from shared.ledger import LedgerGateway, map_transfer_state, resolve_wallets
from shared.models import AuditAction, DeadLetterStatus, PaymentStatus, TransferStatus
from shared.payments import RetryPolicy, calculate_payment_split, payment_idempotency_key
from shared.persistence import DynamoPersistence
from shared.utils import utc_now


def seed_task(persistence, task_id='task-1', amount=Decimal('25.00'), worker_id=WORKER_ID, **fields):
    persistence.add_task(
        task_id, amount, utc_now() - timedelta(hours=1), worker_id=worker_id,
        paymentStatus=PaymentStatus.UNPAID, **fields,
    )


class TestPaymentSplit:
    """Tests for calculate_payment_split function."""

    def test_fee_percent(self):
        fee, net = calculate_payment_split(Decimal('10.00'), Decimal('20'))
        assert fee == Decimal('2.00')
        assert net == Decimal('8.00')

    def test_fee_rounds_down(self):
        # 20% of 3 cents = 0.6 cents, rounds down to 0 cents
        fee, net = calculate_payment_split(Decimal('0.03'), Decimal('20'))
        assert fee == Decimal('0.00')
        assert net == Decimal('0.03')

    def test_fractional_fee(self):
        fee, net = calculate_payment_split(Decimal('25.00'), Decimal('2.5'))
        assert fee == Decimal('0.62')
        assert net == Decimal('24.38')
        assert fee + net == Decimal('25.00')

    def test_no_fee(self):
        assert calculate_payment_split(Decimal('25.00'), Decimal('0')) == (Decimal('0.00'), Decimal('25.00'))


class TestIdempotencyKey:

    def test_deterministic(self):
        assert payment_idempotency_key('t1', 'w1') == payment_idempotency_key('t1', 'w1')
        assert len(payment_idempotency_key('t1', 'w1')) == 64

    def test_scoped_to_worker(self):
        assert payment_idempotency_key('t1', 'w1') != payment_idempotency_key('t1', 'w2')


class TestRetryPolicy:

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_from_config(self):
        policy = RetryPolicy.from_config()
        assert policy.max_attempts == config.PAYMENT_MAX_ATTEMPTS


class TestPaymentExecutor:

    def test_pays_approved_task(self, persistence, ledger, executor):
        seed_task(persistence)
        result = executor.execute('task-1', WORKER_ID, platform_id=PLATFORM_ID)

        key = payment_idempotency_key('task-1', WORKER_ID)
        assert result['status'] == 'paid'
        assert result['attempts'] == 1
        assert result['transaction']['transactionId'] == key
        assert ledger.transfers == [{
            'from': 'wallet-platform',
            'to': '0xworkerwallet',
            'amount': Decimal('25.00'),
            'idempotencyKey': key,
        }]

        task = persistence.tasks['task-1']
        assert task['paymentStatus'] == PaymentStatus.PAID
        assert task['transactionId'] == key
        assert persistence.transactions[key]['status'] == 'confirmed'
        event = persistence.reputation_events[f"{key}-reputation"]
        assert (event['previousScore'], event['newScore']) == (850, 860)
        assert persistence.workers[WORKER_ID]['reputationScore'] == 860
        assert AuditAction.PAYMENT_EXECUTED in persistence.audit_actions()

    def test_fee_is_withheld(self, persistence, ledger, sleeps):
        seed_task(persistence)
        executor = make_executor(persistence, ledger, sleeps, fee_percent=Decimal('2.5'))
        result = executor.execute('task-1', WORKER_ID)

        assert ledger.transfers[0]['amount'] == Decimal('24.38')
        assert result['transaction']['fee'] == Decimal('0.62')
        assert result['transaction']['netAmount'] == Decimal('24.38')
        assert result['transaction']['platformId'] == PLATFORM_ID

    def test_retries_transient_failures(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[transient(), transient(), TransferStatus.CONFIRMED])
        executor = make_executor(persistence, ledger, sleeps)

        result = executor.execute('task-1', WORKER_ID, platform_id=PLATFORM_ID)

        assert result['status'] == 'paid'
        assert result['attempts'] == 3
        assert sleeps == [1.0, 2.0]
        assert len({t['idempotencyKey'] for t in ledger.transfers}) == 1
        assert persistence.audit_actions().count(AuditAction.PAYMENT_ATTEMPT_FAILED) == 2

    def test_exhausted_retries_dead_letter(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[transient(), transient(), transient('still down')])
        executor = make_executor(persistence, ledger, sleeps)

        result = executor.execute('task-1', WORKER_ID, platform_id=PLATFORM_ID)

        assert result['status'] == 'failed'
        assert result['attempts'] == 3
        assert sleeps == [1.0, 2.0]
        assert len(ledger.transfers) == 3

        entries = list(persistence.dead_letters.values())
        assert len(entries) == 1
        entry = entries[0]
        assert entry['deadLetterId'] == result['deadLetterId']
        assert entry['retryAttempts'] == 3
        assert entry['requiresManualIntervention'] is True
        assert entry['status'] == DeadLetterStatus.OPEN
        assert entry['platformId'] == PLATFORM_ID
        assert entry['failureReason'] == 'still down'

        assert persistence.tasks['task-1']['paymentStatus'] == PaymentStatus.FAILED
        assert persistence.transactions == {}
        actions = persistence.audit_actions()
        assert AuditAction.PAYMENT_FAILED in actions
        assert AuditAction.DEAD_LETTERED in actions

    def test_failed_payment_releases_key(self, persistence, sleeps):
        seed_task(persistence)
        store = InMemoryIdempotencyStore()
        executor = make_executor(persistence, FakeLedger(outcomes=[transient()] * 3), sleeps, idempotency_store=store)
        executor.execute('task-1', WORKER_ID)
        assert store.begin(payment_idempotency_key('task-1', WORKER_ID)) is None

    def test_rejection_is_not_retried(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[LedgerRejectedError('insufficient funds')])
        executor = make_executor(persistence, ledger, sleeps)

        result = executor.execute('task-1', WORKER_ID)

        assert result['status'] == 'failed'
        assert result['attempts'] == 1
        assert sleeps == []
        entry = persistence.dead_letters[result['deadLetterId']]
        assert entry['errorCode'] == 'LEDGER_REJECTED'

    def test_polls_pending_transfer(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[TransferStatus.PENDING], status_updates=[TransferStatus.PENDING, TransferStatus.CONFIRMED])
        executor = make_executor(persistence, ledger, sleeps)

        result = executor.execute('task-1', WORKER_ID)

        assert result['status'] == 'paid'
        assert ledger.status_calls == ['tr-1', 'tr-1']
        assert result['transaction']['settlementRef'] == '0xtr-1'

    def test_pending_past_deadline_is_transient(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[TransferStatus.PENDING] * 3)
        executor = make_executor(persistence, ledger, sleeps, attempt_timeout=0.05, poll_interval=0.1)

        result = executor.execute('task-1', WORKER_ID)

        assert result['status'] == 'failed'
        assert result['attempts'] == 3
        assert ledger.status_calls == []

    def test_failed_transfer_is_rejection(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[TransferStatus.FAILED])
        result = make_executor(persistence, ledger, sleeps).execute('task-1', WORKER_ID)
        assert result['status'] == 'failed'
        assert result['attempts'] == 1

    def test_worker_without_wallet(self, persistence, ledger, executor):
        seed_task(persistence)
        del persistence.workers[WORKER_ID]['walletAddress']

        result = executor.execute('task-1', WORKER_ID)

        assert result['status'] == 'failed'
        assert ledger.transfers == []
        assert persistence.dead_letters[result['deadLetterId']]['retryAttempts'] == 0

    def test_task_owned_by_someone_else(self, persistence, executor):
        seed_task(persistence, worker_id='worker-2')
        with pytest.raises(PaymentConflictError):
            executor.execute('task-1', WORKER_ID)
        assert executor.idempotency_store.begin(payment_idempotency_key('task-1', WORKER_ID)) is None

    def test_missing_task(self, executor):
        with pytest.raises(PaymentConflictError):
            executor.execute('nope', WORKER_ID)

    def test_refuses_amount_other_than_verified(self, persistence, ledger, executor):
        seed_task(persistence)
        with pytest.raises(PaymentConflictError):
            executor.execute('task-1', WORKER_ID, platform_id=PLATFORM_ID, amount=Decimal('5.00'))
        assert ledger.transfers == []
        assert persistence.tasks['task-1']['paymentStatus'] == PaymentStatus.UNPAID

    def test_verified_amount_matches(self, persistence, ledger, executor):
        seed_task(persistence)
        result = executor.execute('task-1', WORKER_ID, platform_id=PLATFORM_ID, amount=Decimal('25'))
        assert result['status'] == 'paid'

    def test_already_paid_returns_original_transaction(self, persistence, ledger, sleeps):
        seed_task(persistence)
        first = make_executor(persistence, ledger, sleeps).execute('task-1', WORKER_ID)

        # Fresh store: the idempotency entry expired, the task record still says paid
        second = make_executor(persistence, ledger, sleeps).execute('task-1', WORKER_ID)

        assert second['status'] == 'duplicate'
        assert second['transaction']['transactionId'] == first['transaction']['transactionId']
        assert second['transaction']['transferId'] == first['transaction']['transferId']
        assert len(ledger.transfers) == 1
        assert AuditAction.PAYMENT_DUPLICATE in persistence.audit_actions()

    def test_completed_key_returns_prior_result(self, persistence, ledger, executor):
        seed_task(persistence)
        first = executor.execute('task-1', WORKER_ID)
        second = executor.execute('task-1', WORKER_ID)

        assert second['status'] == 'duplicate'
        assert second['transaction'] == first['transaction']
        assert len(ledger.transfers) == 1

    def test_concurrent_duplicates_pay_once(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(delay=0.1)
        executor = make_executor(persistence, ledger, sleeps)
        barrier = threading.Barrier(2)
        results = []
        errors = []

        def deliver():
            barrier.wait()
            try:
                results.append(executor.execute('task-1', WORKER_ID))
            except PaymentInProgressError as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert len(ledger.transfers) == 1
        assert len(persistence.transactions) == 1
        statuses = [r['status'] for r in results]
        assert statuses.count('paid') == 1
        assert len(results) + len(errors) == 2

    def test_cancel_during_backoff(self, persistence, sleeps):
        seed_task(persistence)
        ledger = FakeLedger(outcomes=[transient()] * 3)
        cancel = threading.Event()
        executor = make_executor(persistence, ledger, sleeps, cancel_event=cancel)
        cancel.set()

        with pytest.raises(PaymentCancelledError):
            executor.execute('task-1', WORKER_ID)

        assert len(ledger.transfers) == 1
        assert persistence.dead_letters == {}
        assert persistence.tasks['task-1']['paymentStatus'] == PaymentStatus.UNPAID
        assert executor.idempotency_store.begin(payment_idempotency_key('task-1', WORKER_ID)) is None

    def test_settled_callback(self, persistence, ledger, sleeps):
        seed_task(persistence)
        settled = []
        make_executor(persistence, ledger, sleeps, on_settled=settled.append).execute('task-1', WORKER_ID)
        assert settled == [WORKER_ID]


class TestWallets:

    def test_platform_and_worker_wallets(self):
        wallets = resolve_wallets({'walletId': 'wp'}, {'workerId': 'w', 'walletAddress': '0xw'})
        assert wallets == {'from': 'wp', 'to': '0xw'}

    def test_fallback_platform_wallet(self, monkeypatch):
        monkeypatch.setattr(config, 'PLATFORM_FALLBACK_WALLET_ID', 'fallback')
        assert resolve_wallets(None, {'walletId': 'ww'}) == {'from': 'fallback', 'to': 'ww'}

    def test_no_wallet(self, monkeypatch):
        monkeypatch.setattr(config, 'PLATFORM_FALLBACK_WALLET_ID', '')
        with pytest.raises(LedgerRejectedError):
            resolve_wallets({}, {'walletAddress': '0xw'})
        with pytest.raises(LedgerRejectedError):
            resolve_wallets({'walletId': 'wp'}, {'workerId': 'w'})


def http_response(status, body):
    response = MagicMock()
    response.status_code = status
    response.content = json.dumps(body).encode('utf-8')
    response.json.return_value = body
    response.reason = 'Reason'
    return response


class TestLedgerGateway:

    def _gateway(self, session):
        return LedgerGateway(base_url='https://ledger.test/v1/', api_key='secret', timeout=2.0, session=session)

    def test_transfer(self):
        session = MagicMock()
        session.request.return_value = http_response(201, {'data': {'id': 'tr-9', 'state': 'COMPLETE', 'txHash': '0xabc'}})

        result = self._gateway(session).transfer('wp', '0xw', Decimal('24.38'), 'key-1')

        assert result == {'transferId': 'tr-9', 'statusRef': '0xabc', 'status': TransferStatus.CONFIRMED}
        args, kwargs = session.request.call_args
        assert args == ('POST', 'https://ledger.test/v1/transfers')
        assert kwargs['json']['amounts'] == ['24.38']
        assert kwargs['json']['idempotencyKey'] == 'key-1'
        assert kwargs['headers']['Authorization'] == 'Bearer secret'
        assert kwargs['timeout'] == 2.0

    def test_get_status(self):
        session = MagicMock()
        session.request.return_value = http_response(200, {'data': {'transfer': {'id': 'tr-9', 'state': 'queued'}}})
        assert self._gateway(session).get_status('tr-9', timeout=0.5)['status'] == TransferStatus.PENDING
        assert session.request.call_args[1]['timeout'] == 0.5

    @pytest.mark.parametrize('status', [429, 500, 503])
    def test_server_errors_are_transient(self, status):
        session = MagicMock()
        session.request.return_value = http_response(status, {'message': 'busy'})
        with pytest.raises(TransientLedgerError):
            self._gateway(session).transfer('wp', '0xw', Decimal('1'), 'k')

    def test_client_error_is_rejection(self):
        session = MagicMock()
        session.request.return_value = http_response(400, {'message': 'insufficient funds'})
        with pytest.raises(LedgerRejectedError) as exc:
            self._gateway(session).transfer('wp', '0xw', Decimal('1'), 'k')
        assert 'insufficient funds' in exc.value.message

    @pytest.mark.parametrize('error', [requests.Timeout('slow'), requests.ConnectionError('reset')])
    def test_network_errors_are_transient(self, error):
        session = MagicMock()
        session.request.side_effect = error
        with pytest.raises(TransientLedgerError):
            self._gateway(session).transfer('wp', '0xw', Decimal('1'), 'k')

    def test_missing_transfer_id(self):
        session = MagicMock()
        session.request.return_value = http_response(200, {'data': {}})
        with pytest.raises(TransientLedgerError):
            self._gateway(session).transfer('wp', '0xw', Decimal('1'), 'k')

    @pytest.mark.parametrize('state, expected', [
        ('complete', TransferStatus.CONFIRMED),
        ('CONFIRMED', TransferStatus.CONFIRMED),
        ('denied', TransferStatus.FAILED),
        ('initiated', TransferStatus.PENDING),
        (None, TransferStatus.PENDING),
    ])
    def test_state_mapping(self, state, expected):
        assert map_transfer_state(state) == expected


class TestPaymentCommit:
    """DynamoPersistence.commit_payment against a mocked transact_write."""

    def _records(self):
        transaction = {
            'transactionId': 'key-1',
            'taskId': 'task-1',
            'workerId': WORKER_ID,
            'amount': Decimal('25.00'),
            'netAmount': Decimal('25.00'),
            'status': 'confirmed',
        }
        event = {'eventId': 'key-1-reputation', 'workerId': WORKER_ID, 'newScore': 860, 'previousScore': 850}
        audit = {'auditId': 'a-1', 'action': AuditAction.PAYMENT_EXECUTED, 'metadata': {'attempts': 1, 'ratio': 0.5}}
        return transaction, event, audit

    def test_five_writes_in_one_transaction(self):
        with patch('shared.dynamo.transact_write') as write:
            assert DynamoPersistence().commit_payment(*self._records()) is True

        items = write.call_args[0][0]
        assert len(items) == 5
        assert items[0]['Put']['TableName'] == config.TRANSACTIONS_TABLE
        assert items[0]['Put']['ConditionExpression'] == 'attribute_not_exists(transactionId)'
        assert items[0]['Put']['Item']['amount'] == {'N': '25.00'}
        assert items[1]['Update']['ConditionExpression'].startswith('workerId = :wid')
        assert items[2]['Put']['TableName'] == config.REPUTATION_EVENTS_TABLE
        assert items[3]['Put']['TableName'] == config.AUDIT_LOG_TABLE
        assert items[4]['Update']['TableName'] == config.WORKERS_TABLE
        assert 'statsVersion :one' in items[4]['Update']['UpdateExpression']

    def test_existing_transaction_is_duplicate(self):
        error = ClientError(
            {
                'Error': {'Code': 'TransactionCanceledException', 'Message': 'cancelled'},
                'CancellationReasons': [{'Code': 'ConditionalCheckFailed'}, {'Code': 'None'}],
            },
            'TransactWriteItems',
        )
        with patch('shared.dynamo.transact_write', side_effect=error):
            assert DynamoPersistence().commit_payment(*self._records()) is False

    def test_other_failures_raise(self):
        error = ClientError(
            {
                'Error': {'Code': 'TransactionCanceledException', 'Message': 'cancelled'},
                'CancellationReasons': [{'Code': 'None'}, {'Code': 'ConditionalCheckFailed'}],
            },
            'TransactWriteItems',
        )
        with patch('shared.dynamo.transact_write', side_effect=error):
            with pytest.raises(PaymentCommitError):
                DynamoPersistence().commit_payment(*self._records())


class TestWorkerVersion:

    def test_bump(self):
        with patch('shared.dynamo.update_item', return_value=True) as update:
            assert DynamoPersistence().bump_worker_version(WORKER_ID) is True
        args, kwargs = update.call_args
        assert args[1] == {'workerId': WORKER_ID}
        assert args[2] == 'ADD statsVersion :one'
        assert kwargs['condition_expression'] == 'attribute_exists(workerId)'

    def test_read_defaults_to_zero(self):
        with patch('shared.dynamo.get_item', side_effect=[None, {'workerId': WORKER_ID, 'statsVersion': Decimal('4')}]):
            persistence = DynamoPersistence()
            assert persistence.get_worker_version(WORKER_ID) == 0
            assert persistence.get_worker_version(WORKER_ID) == 4
