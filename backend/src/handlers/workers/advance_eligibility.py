"""
Advance Eligibility Handler.
GET /workers/{workerId}/advance-eligibility?refresh=true

Combines the worker's risk score with the 7-day earnings forecast.
Workers may only query themselves; admins may query anyone.
"""
from shared.auth import get_user_sub, is_admin
from shared.exceptions import GigStreamError
from shared.logging import logger, log_event
from shared.pipeline import get_services
from shared.prediction import validate_prediction
from shared.risk import evaluate_advance_eligibility, format_risk_breakdown
from shared.utils import error_response, format_response, get_path_param, get_query_param


def handler(event, context, services=None):
    log_event(event)
    services = services or get_services()

    worker_id = get_path_param(event, 'workerId')
    if not worker_id:
        return format_response(400, {'error': {'code': 'INVALID_PAYLOAD', 'message': 'Missing workerId'}})

    caller = get_user_sub(event)
    if not caller:
        return format_response(401, {'error': {'code': 'UNAUTHORIZED', 'message': 'Not authenticated'}})
    if caller != worker_id and not is_admin(event):
        return format_response(403, {'error': {'code': 'FORBIDDEN', 'message': 'Cannot view another worker'}})

    refresh = (get_query_param(event, 'refresh') or '').lower() == 'true'

    try:
        risk = services.risk.score(worker_id, refresh=refresh)
        forecast = services.forecaster.forecast(worker_id, refresh=refresh)
        # Loan state is read fresh; a cached score may predate a new advance
        active_loans = services.persistence.get_active_loans(worker_id)
        decision = evaluate_advance_eligibility({**risk, 'activeLoans': len(active_loans)}, forecast)
    except GigStreamError as e:
        return error_response(e)
    except Exception:
        logger.exception(f"Eligibility check failed for worker {worker_id}")
        return format_response(500, {'error': {'code': 'INTERNAL_ERROR', 'message': 'Internal server error'}})

    logger.info(
        f"Worker {worker_id} advance eligibility: eligible={decision['eligible']} "
        f"max={decision['maxAdvance']} score={decision['riskScore']}"
    )

    return format_response(200, {
        'workerId': worker_id,
        **decision,
        'riskBreakdown': format_risk_breakdown(risk),
        'forecast': {
            'next7Days': forecast['next7Days'],
            'confidence': forecast['confidence'],
            'confidenceScore': forecast['confidenceScore'],
            'trend': forecast['trend'],
            'dailyPredictions': forecast['dailyPredictions'],
            'breakdown': forecast['breakdown'],
            'safeAdvanceAmount': forecast['safeAdvanceAmount'],
        },
        'forecastValidation': validate_prediction(forecast),
        'calculatedAt': risk.get('calculatedAt'),
    })
