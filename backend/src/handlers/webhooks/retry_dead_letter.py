"""
Retry Dead Letter Handler.
POST /webhooks/retry/{id}

Manually replays a dead-lettered payout for the calling platform.
"""
from shared.auth import authenticate_platform
from shared.exceptions import GigStreamError
from shared.logging import logger, log_event
from shared.pipeline import get_services
from shared.utils import error_response, format_response, get_header, get_path_param


def handler(event, context, services=None):
    log_event(event)
    services = services or get_services()

    dead_letter_id = get_path_param(event, 'id')
    if not dead_letter_id:
        return format_response(400, {'error': {'code': 'INVALID_PAYLOAD', 'message': 'Missing dead letter id'}})

    try:
        platform = authenticate_platform(services.persistence, get_header(event, 'X-API-Key'), require_webhooks=False)
        result = services.dead_letters.replay(dead_letter_id, platform['platformId'], services.executor)
    except GigStreamError as e:
        logger.warning(f"Replay of {dead_letter_id} refused: {e.code} {e.message}")
        return error_response(e)
    except Exception:
        logger.exception(f"Replay of {dead_letter_id} failed")
        return format_response(500, {'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}})

    if result['success']:
        return format_response(200, result)
    return format_response(502, result)
