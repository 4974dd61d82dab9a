"""
Refresh Worker Scores Handler.
Triggered by DynamoDB Streams on the loans table.

When a loan is repaid (or a new one opens) the worker's cached history, risk
score and forecast are stale; drop them and recompute the risk score.
"""
from shared.logging import logger
from shared.models import LoanStatus
from shared.pipeline import get_services


def handler(event, context, services=None):
    services = services or get_services()

    if 'Records' not in event:
        return {'message': 'No records to process'}

    refreshed = set()
    for record in event['Records']:
        try:
            worker_id = changed_worker(record)
        except (KeyError, TypeError) as e:
            logger.error(f"Malformed stream record {record.get('eventID')}: {e}")
            continue
        if not worker_id or worker_id in refreshed:
            continue

        services.invalidate_worker(worker_id)
        refreshed.add(worker_id)
        try:
            risk = services.risk.score(worker_id, refresh=True)
            logger.info(f"Worker {worker_id} risk refreshed after loan change: {risk['score']}")
        except Exception:
            # Caches are already cleared; the next read recomputes
            logger.exception(f"Risk recompute failed for worker {worker_id}")

    return {'message': f'Refreshed {len(refreshed)} workers'}


def changed_worker(record) -> str:
    """
    Worker whose loan state changed in a way that moves the risk score,
    or None for records that do not matter.
    """
    if record['eventName'] not in ('INSERT', 'MODIFY'):
        return None

    new_image = record['dynamodb']['NewImage']
    old_image = record['dynamodb'].get('OldImage') or {}

    new_status = new_image.get('status', {}).get('S')
    old_status = old_image.get('status', {}).get('S')
    if new_status == old_status:
        return None
    if new_status not in (LoanStatus.ACTIVE, LoanStatus.REPAID, LoanStatus.DEFAULTED):
        return None

    return new_image.get('workerId', {}).get('S')
