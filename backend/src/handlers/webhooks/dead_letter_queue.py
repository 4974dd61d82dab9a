"""
Dead Letter Queue Handler.
GET /webhooks/dead-letter-queue?limit=&offset=&status=

Lists the calling platform's failed payouts, newest first.
"""
from shared.auth import authenticate_platform
from shared.exceptions import GigStreamError
from shared.logging import logger, log_event
from shared.models import DeadLetterStatus
from shared.pipeline import get_services
from shared.utils import error_response, format_response, get_header, get_int_query_param, get_query_param

MAX_PAGE_SIZE = 100
STATUS_FILTERS = (DeadLetterStatus.OPEN, DeadLetterStatus.RESOLVED, 'all')


def handler(event, context, services=None):
    log_event(event)
    services = services or get_services()

    try:
        platform = authenticate_platform(services.persistence, get_header(event, 'X-API-Key'), require_webhooks=False)
    except GigStreamError as e:
        return error_response(e)

    limit = get_int_query_param(event, 'limit', 50, minimum=1, maximum=MAX_PAGE_SIZE)
    offset = get_int_query_param(event, 'offset', 0)
    status = get_query_param(event, 'status', DeadLetterStatus.OPEN)
    if status not in STATUS_FILTERS:
        return format_response(400, {'error': {'code': 'INVALID_PAYLOAD', 'message': f"status must be one of {STATUS_FILTERS}"}})

    try:
        page = services.dead_letters.list_entries(
            platform['platformId'], limit=limit, offset=offset,
            status=None if status == 'all' else status,
        )
    except Exception:
        logger.exception('Listing dead letters failed')
        return format_response(500, {'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}})

    logger.info(f"Platform {platform['platformId']} listed {len(page['items'])}/{page['total']} dead letters")
    return format_response(200, page)
