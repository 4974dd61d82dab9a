"""
Tests for webhook intake: signatures, platform auth, payload schema and the fast 202.
"""
import json
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import API_KEY, PLATFORM_ID, WEBHOOK_SECRET, WORKER_ID, RecordingDispatcher
from shared.auth import authenticate_platform, hash_api_key, sign_body, verify_signature
from shared.dispatch import ThreadPoolDispatcher
from shared.exceptions import AuthenticationError, PayloadValidationError, PlatformForbiddenError
from shared.models import AuditAction
from shared.schemas import parse_task_completion
from shared.utils import utc_now


def completion_body(**overrides):
    body = {
        'taskId': 'task-100',
        'workerId': WORKER_ID,
        'externalTaskId': 'ext-100',
        'amount': 25.50,
        'completedAt': (utc_now() - timedelta(hours=1)).isoformat(),
        'completionProof': {
            'photos': ['https://cdn.example.com/p1.jpg', 'https://cdn.example.com/p2.jpg'],
            'gpsCoordinates': {'lat': 40.7128, 'lng': -74.006},
            'duration': 35,
        },
        'rating': 5,
    }
    body.update(overrides)
    return body


def webhook_event(body, api_key=API_KEY, secret=WEBHOOK_SECRET, signature=None):
    raw = body if isinstance(body, str) else json.dumps(body)
    headers = {'Content-Type': 'application/json'}
    if api_key:
        headers['X-API-Key'] = api_key
    if signature is None and secret:
        signature = sign_body(raw, secret)
    if signature:
        headers['x-signature'] = signature
    return {'httpMethod': 'POST', 'path': '/webhooks/task-completed', 'headers': headers, 'body': raw}


class TestSignatures:

    def test_valid_signature(self):
        raw = json.dumps(completion_body())
        assert verify_signature(raw, sign_body(raw, WEBHOOK_SECRET), WEBHOOK_SECRET)

    def test_signature_has_prefix(self):
        assert sign_body('{}', 'k').startswith('sha256=')

    def test_tampered_body_fails(self):
        raw = json.dumps(completion_body())
        signature = sign_body(raw, WEBHOOK_SECRET)
        tampered = raw.replace('25.5', '925.5')
        assert not verify_signature(tampered, signature, WEBHOOK_SECRET)

    def test_wrong_secret_fails(self):
        raw = json.dumps(completion_body())
        assert not verify_signature(raw, sign_body(raw, 'other'), WEBHOOK_SECRET)

    def test_missing_signature_fails(self):
        assert not verify_signature('{}', None, WEBHOOK_SECRET)
        assert not verify_signature('{}', '', WEBHOOK_SECRET)


class TestPlatformAuthentication:

    def test_known_key(self, persistence):
        platform = authenticate_platform(persistence, API_KEY)
        assert platform['platformId'] == PLATFORM_ID

    def test_missing_key(self, persistence):
        with pytest.raises(AuthenticationError):
            authenticate_platform(persistence, None)

    def test_unknown_key(self, persistence):
        with pytest.raises(AuthenticationError):
            authenticate_platform(persistence, 'nope')

    def test_inactive_platform(self, persistence):
        persistence.platforms[PLATFORM_ID]['status'] = 'suspended'
        with pytest.raises(PlatformForbiddenError):
            authenticate_platform(persistence, API_KEY)

    def test_webhooks_disabled(self, persistence):
        persistence.platforms[PLATFORM_ID]['webhooksEnabled'] = False
        with pytest.raises(PlatformForbiddenError):
            authenticate_platform(persistence, API_KEY)
        # Dead-letter endpoints do not need webhooks enabled
        assert authenticate_platform(persistence, API_KEY, require_webhooks=False)['platformId'] == PLATFORM_ID

    def test_key_is_stored_hashed(self):
        assert hash_api_key(API_KEY) != API_KEY
        assert hash_api_key(API_KEY) == hash_api_key(API_KEY)


class TestPayloadSchema:

    def test_valid_payload(self):
        task = parse_task_completion(json.dumps(completion_body()), platform_id=PLATFORM_ID)
        assert task.task_ref == 'task-100'
        assert task.amount == Decimal('25.5')
        assert task.completion_proof.photo_count == 2
        assert task.completion_proof.gps_coordinates.lng == -74.006
        assert task.platform_id == PLATFORM_ID

    def test_authenticated_platform_overrides_body(self):
        task = parse_task_completion(completion_body(platformId='spoofed'), platform_id=PLATFORM_ID)
        assert task.platform_id == PLATFORM_ID

    def test_external_id_used_when_task_id_missing(self):
        body = completion_body()
        del body['taskId']
        assert parse_task_completion(body).task_ref == 'ext-100'

    def test_lon_alias(self):
        body = completion_body()
        body['completionProof']['gpsCoordinates'] = {'lat': 1.5, 'lon': 2.5}
        assert parse_task_completion(body).completion_proof.gps_coordinates.lng == 2.5

    def test_naive_timestamp_is_utc(self):
        task = parse_task_completion(completion_body(completedAt='2026-03-01T10:00:00'))
        assert task.completed_at.utcoffset() == timedelta(0)

    def test_model_is_frozen(self):
        task = parse_task_completion(completion_body())
        with pytest.raises(Exception):
            task.amount = Decimal('1')

    def test_missing_worker(self):
        body = completion_body()
        del body['workerId']
        with pytest.raises(PayloadValidationError) as exc:
            parse_task_completion(body)
        assert exc.value.details

    def test_rating_out_of_range(self):
        with pytest.raises(PayloadValidationError):
            parse_task_completion(completion_body(rating=9))

    def test_not_json(self):
        with pytest.raises(PayloadValidationError):
            parse_task_completion('{not json')

    def test_not_an_object(self):
        with pytest.raises(PayloadValidationError):
            parse_task_completion('[1, 2]')

    def test_payload_round_trip(self):
        task = parse_task_completion(completion_body(), platform_id=PLATFORM_ID)
        again = parse_task_completion(task.to_payload())
        assert again.to_payload() == task.to_payload()
        assert again.amount == task.amount
        assert again.completed_at == task.completed_at


class TestTaskCompletedHandler:

    def _call(self, services, event):
        from handlers.webhooks.task_completed import handler
        return handler(event, None, services=services)

    def test_accepts_and_enqueues(self, services):
        response = self._call(services, webhook_event(completion_body()))

        assert response['statusCode'] == 202
        body = json.loads(response['body'])
        assert body['status'] == 'accepted'
        assert body['taskId'] == 'task-100'
        assert body['estimatedProcessingTime']
        assert len(services.dispatcher.messages) == 1
        message = services.dispatcher.messages[0]
        assert message['platformId'] == PLATFORM_ID
        assert message['payload']['workerId'] == WORKER_ID

    def test_ack_does_not_touch_ledger_or_tasks(self, services, persistence, ledger):
        self._call(services, webhook_event(completion_body()))
        assert ledger.transfers == []
        assert persistence.tasks == {}
        assert persistence.verifications == {}

    def test_bad_signature(self, services, persistence):
        response = self._call(services, webhook_event(completion_body(), signature='sha256=deadbeef'))

        assert response['statusCode'] == 403
        assert json.loads(response['body'])['error']['code'] == 'INVALID_SIGNATURE'
        assert services.dispatcher.messages == []
        assert AuditAction.WEBHOOK_VERIFICATION_FAILED in persistence.audit_actions()
        entry = persistence.audit_log[-1]
        assert entry['success'] is False
        assert entry['metadata']['signatureProvided'].startswith('sha256=deadbeef')

    def test_missing_signature(self, services):
        response = self._call(services, webhook_event(completion_body(), secret=None))
        assert response['statusCode'] == 403
        assert services.dispatcher.messages == []

    def test_missing_api_key(self, services, persistence):
        response = self._call(services, webhook_event(completion_body(), api_key=None))

        assert response['statusCode'] == 401
        entry = persistence.audit_log[-1]
        assert entry['action'] == AuditAction.WEBHOOK_REJECTED
        assert entry['actorId'] == 'system'
        assert entry['actorType'] == 'system'
        assert entry['success'] is False
        assert entry['metadata'] == {'code': 'INVALID_API_KEY', 'statusCode': 401}

    def test_unknown_api_key_is_audited(self, services, persistence):
        response = self._call(services, webhook_event(completion_body(), api_key='gs_unknown'))

        assert response['statusCode'] == 401
        assert persistence.audit_log[-1]['errorMessage'] == 'Invalid API key'

    def test_webhooks_disabled(self, services, persistence):
        persistence.platforms[PLATFORM_ID]['webhooksEnabled'] = False
        response = self._call(services, webhook_event(completion_body()))
        assert response['statusCode'] == 403
        assert json.loads(response['body'])['error']['code'] == 'FORBIDDEN'
        entry = persistence.audit_log[-1]
        assert entry['action'] == AuditAction.WEBHOOK_REJECTED
        assert entry['metadata']['statusCode'] == 403

    def test_invalid_payload(self, services, persistence):
        body = completion_body()
        del body['externalTaskId']
        response = self._call(services, webhook_event(body))
        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error']['code'] == 'INVALID_PAYLOAD'
        assert services.dispatcher.messages == []
        entry = persistence.audit_log[-1]
        assert entry['action'] == AuditAction.WEBHOOK_REJECTED
        assert entry['actorId'] == PLATFORM_ID
        assert entry['actorType'] == 'platform'

    def test_signature_failure_audited_once(self, services, persistence):
        self._call(services, webhook_event(completion_body(), signature='sha256=deadbeef'))
        assert persistence.audit_actions() == [AuditAction.WEBHOOK_VERIFICATION_FAILED]

    def test_base64_body(self, services):
        import base64
        raw = json.dumps(completion_body())
        event = webhook_event(raw)
        event['body'] = base64.b64encode(raw.encode('utf-8')).decode('ascii')
        event['isBase64Encoded'] = True
        assert self._call(services, event)['statusCode'] == 202

    def test_queue_unavailable(self, services):
        services._dispatcher = RecordingDispatcher(accept=False)
        response = self._call(services, webhook_event(completion_body()))
        assert response['statusCode'] == 503

    def test_ack_returns_before_processing(self, services):
        release = threading.Event()
        started = threading.Event()

        def slow_process(message):
            started.set()
            release.wait(5)

        dispatcher = ThreadPoolDispatcher(slow_process, max_workers=1)
        services._dispatcher = dispatcher
        try:
            began = time.perf_counter()
            response = self._call(services, webhook_event(completion_body()))
            elapsed_ms = (time.perf_counter() - began) * 1000

            assert response['statusCode'] == 202
            assert elapsed_ms < 200
            assert started.wait(2)
            assert not dispatcher.last_future.done()
        finally:
            release.set()
            dispatcher.shutdown()
