"""
Process Task Completion Handler.
Triggered by SQS (task-completion queue). Runs verification and payment for
each accepted webhook.

Returns a partial batch response: records that raised are reported in
batchItemFailures and redelivered by SQS; everything else is acknowledged.
"""
import json

from shared.exceptions import PayloadValidationError
from shared.logging import logger
from shared.pipeline import get_services, process_message
from shared.sqs import parse_record_body


def handler(event, context, services=None):
    services = services or get_services()
    records = event.get('Records') or []
    logger.info(f"Processing {len(records)} task completion message(s)")

    failures = []
    processed = 0
    for record in records:
        message_id = record.get('messageId')
        try:
            message = parse_record_body(record)
            outcome = process_message(message, services)
            processed += 1
            logger.info(f"Message {message_id}: task {outcome.get('taskId')} → {outcome.get('status')}")
        except (json.JSONDecodeError, KeyError, PayloadValidationError) as e:
            # Redelivery cannot fix a malformed message
            logger.error(f"Dropping malformed message {message_id}: {e}")
        except Exception:
            logger.exception(f"Message {message_id} failed, leaving it for redelivery")
            failures.append({'itemIdentifier': message_id})

    logger.info(f"Processed {processed}/{len(records)} messages, {len(failures)} to retry")
    return {'batchItemFailures': failures}
