"""
SQS utility functions for message operations.
"""
import json
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import config
from .logging import logger
from .utils import DecimalEncoder

_sqs_client = None


def get_sqs_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client('sqs', region_name=config.AWS_REGION)
    return _sqs_client


def send_message(queue_url: str, message_body: Dict[str, Any], client=None) -> Optional[str]:
    """
    Send a single message to SQS queue.

    Args:
        queue_url: SQS queue URL
        message_body: Message body as dict (will be JSON serialized)

    Returns:
        SQS MessageId, or None if the send failed
    """
    client = client or get_sqs_client()
    try:
        response = client.send_message(
            QueueUrl=queue_url,
            MessageBody=json.dumps(message_body, cls=DecimalEncoder)
        )
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Error sending message to SQS: {e}")
        return None
    logger.info(f"Message {response.get('MessageId')} sent to {queue_url}")
    return response.get('MessageId')


def parse_record_body(record: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the JSON body of one SQS event record."""
    return json.loads(record['body'])
