"""
Task Completed Webhook Handler.
POST /webhooks/task-completed

Authenticates the platform, verifies the body signature, validates the payload
and hands it to the verification worker. The 202 goes out before any
verification, scoring or payment work starts.
"""
import time

from shared.auth import authenticate_platform, verify_signature
from shared.config import config
from shared.exceptions import GigStreamError, SignatureError
from shared.logging import logger, log_event
from shared.models import ActorType, AuditAction
from shared.pipeline import build_message, get_services
from shared.schemas import parse_task_completion
from shared.utils import error_response, format_response, get_header, get_raw_body

ACK_BUDGET_MS = 200


def handler(event, context, services=None):
    """
    Headers: X-API-Key, X-Signature: sha256=<hex>
    Body: { taskId, workerId, externalTaskId, amount, completedAt, completionProof, rating? }
    """
    started = time.perf_counter()
    log_event(event)
    services = services or get_services()

    raw_body = get_raw_body(event)
    signature = get_header(event, 'X-Signature')
    platform_id = None

    try:
        platform = authenticate_platform(services.persistence, get_header(event, 'X-API-Key'))
        platform_id = platform['platformId']

        if not verify_signature(raw_body, signature, platform['webhookSecret']):
            services.audit.record(
                platform_id, ActorType.PLATFORM, AuditAction.WEBHOOK_VERIFICATION_FAILED,
                'webhook', None, False,
                metadata={'signatureProvided': (signature or '')[:20] + '...'},
            )
            raise SignatureError('HMAC signature verification failed')

        task = parse_task_completion(raw_body, platform_id=platform_id)
    except GigStreamError as e:
        logger.warning(f"Webhook rejected: {e.code} {e.message}")
        if not isinstance(e, SignatureError):
            services.audit.record(
                platform_id, ActorType.PLATFORM if platform_id else ActorType.SYSTEM,
                AuditAction.WEBHOOK_REJECTED, 'webhook', None, False,
                metadata={'code': e.code, 'statusCode': e.status_code},
                error_message=e.message,
            )
        return error_response(e)
    except Exception:
        logger.exception("Webhook intake failed")
        return format_response(500, {'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}})

    request_id = getattr(context, 'aws_request_id', None)
    if not services.dispatcher.dispatch(build_message(task, request_id)):
        logger.error(f"Could not enqueue task {task.task_ref}")
        return format_response(503, {'error': {'code': 'QUEUE_UNAVAILABLE', 'message': 'Try again later'}})

    elapsed_ms = (time.perf_counter() - started) * 1000
    log = logger.warning if elapsed_ms > ACK_BUDGET_MS else logger.info
    log(f"Task {task.task_ref} from platform {platform_id} accepted in {elapsed_ms:.1f}ms")

    return format_response(202, {
        'status': 'accepted',
        'message': 'Task queued for verification',
        'estimatedProcessingTime': config.ESTIMATED_PROCESSING_TIME,
        'taskId': task.task_ref,
    })
