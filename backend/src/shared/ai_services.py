"""
AWS AI Services module for completion scoring.
Provides the Amazon SageMaker integration used by the external confidence scorer.
"""
import json
import math
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import config
from .exceptions import ScorerUnavailableError
from .logging import logger
from .utils import DecimalEncoder


# Initialize AWS clients lazily
_sagemaker_client = None


def get_sagemaker_client():
    """Get or create SageMaker Runtime client with a tight timeout and no retries."""
    global _sagemaker_client
    if _sagemaker_client is None:
        _sagemaker_client = boto3.client(
            'sagemaker-runtime',
            region_name=config.AWS_REGION,
            config=BotoConfig(
                connect_timeout=config.SCORER_TIMEOUT_SECONDS,
                read_timeout=config.SCORER_TIMEOUT_SECONDS,
                retries={'max_attempts': 0},
            ),
        )
    return _sagemaker_client


# =============================================================================
# Amazon SageMaker Functions (Optional)
# =============================================================================

def invoke_sagemaker_endpoint(
    payload: Dict[str, Any],
    endpoint_name: str = None,
    client=None,
) -> Dict[str, Any]:
    """
    Invoke a SageMaker endpoint for completion scoring.

    Args:
        payload: Feature vector for the model
        endpoint_name: SageMaker endpoint name, defaults to config value
        client: Optional sagemaker-runtime client (tests)

    Returns:
        Model prediction response

    Raises:
        ScorerUnavailableError: Endpoint not configured, unreachable, or returned garbage
    """
    if endpoint_name is None:
        endpoint_name = config.SAGEMAKER_ENDPOINT_NAME

    if not endpoint_name:
        raise ScorerUnavailableError('No SageMaker endpoint configured')

    client = client or get_sagemaker_client()

    try:
        response = client.invoke_endpoint(
            EndpointName=endpoint_name,
            ContentType='application/json',
            Accept='application/json',
            Body=json.dumps(payload, cls=DecimalEncoder)
        )
        result = json.loads(response['Body'].read().decode('utf-8'))
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Error invoking SageMaker endpoint {endpoint_name}: {e}")
        raise ScorerUnavailableError(f"SageMaker endpoint {endpoint_name} unavailable: {e}")
    except (ValueError, KeyError) as e:
        raise ScorerUnavailableError(f"SageMaker endpoint {endpoint_name} returned an unreadable response: {e}")

    logger.info(f"SageMaker endpoint {endpoint_name} returned: {result}")
    return result


def extract_confidence(result: Any) -> Optional[float]:
    """
    Pull a confidence out of the common SageMaker response shapes:
    {'confidence': 87}, {'predictions': [{'score': 0.87}]}, [0.87] or 0.87.
    Probabilities in [0, 1] are scaled to 0-100.
    """
    value = result
    if isinstance(value, dict):
        if 'predictions' in value:
            value = value['predictions']
        else:
            value = value.get('confidence', value.get('score'))
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('confidence', value.get('score'))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value) * 100 if 0 <= value <= 1 else float(value)
