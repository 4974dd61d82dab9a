"""
DynamoDB utility functions shared by the persistence gateway.
"""
import boto3
from decimal import Decimal
from typing import List, Dict, Any, Optional
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError
from .config import config
from .logging import logger

_dynamodb = None
_client = None
_serializer = TypeSerializer()


def get_resource():
    """Get or create the DynamoDB resource."""
    global _dynamodb
    if _dynamodb is None:
        _dynamodb = boto3.resource('dynamodb', region_name=config.AWS_REGION)
    return _dynamodb


def get_client():
    """Get or create the low-level DynamoDB client (transactions)."""
    global _client
    if _client is None:
        _client = boto3.client('dynamodb', region_name=config.AWS_REGION)
    return _client


def clean_item(value: Any) -> Any:
    """
    Prepare a value for DynamoDB: floats become Decimal, None attributes are dropped.
    """
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: clean_item(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [clean_item(v) for v in value]
    return value


def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a plain dict into the typed attribute map used by the client API."""
    return {k: _serializer.serialize(v) for k, v in clean_item(item).items()}


def is_conditional_failure(error: ClientError) -> bool:
    return error.response['Error']['Code'] in (
        'ConditionalCheckFailedException',
        'TransactionCanceledException',
    )


def query(
    table_name: str,
    index_name: Optional[str] = None,
    key_condition: Optional[Any] = None,
    filter_expression: Optional[Any] = None,
    limit: Optional[int] = None,
    scan_forward: bool = True
) -> List[Dict[str, Any]]:
    """
    Query DynamoDB table or index, following pagination until limit is reached.

    Args:
        table_name: Name of the DynamoDB table
        index_name: Optional GSI name
        key_condition: Key condition expression
        filter_expression: Optional filter expression
        limit: Max items to return
        scan_forward: True for ascending, False for descending

    Returns:
        List of items matching the query
    """
    table = get_resource().Table(table_name)

    query_params = {
        'ScanIndexForward': scan_forward
    }

    if index_name:
        query_params['IndexName'] = index_name
    if key_condition is not None:
        query_params['KeyConditionExpression'] = key_condition
    if filter_expression is not None:
        query_params['FilterExpression'] = filter_expression

    items: List[Dict[str, Any]] = []
    try:
        while True:
            response = table.query(**query_params)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key or (limit and len(items) >= limit):
                break
            query_params['ExclusiveStartKey'] = last_key
    except ClientError as e:
        logger.error(f"Error querying {table_name}: {e}")
        raise

    return items[:limit] if limit else items

def get_item(table_name: str, key: Dict[str, Any], consistent: bool = False) -> Optional[Dict[str, Any]]:
    """Get a single item from DynamoDB."""
    try:
        table = get_resource().Table(table_name)
        response = table.get_item(Key=key, ConsistentRead=consistent)
        return response.get('Item')
    except ClientError as e:
        logger.error(f"Error getting item from {table_name}: {e}")
        raise

def put_item(
    table_name: str,
    item: Dict[str, Any],
    condition_expression: Optional[str] = None
) -> bool:
    """
    Put an item. With a condition, returns False instead of raising when the condition fails.
    """
    table = get_resource().Table(table_name)
    params = {'Item': clean_item(item)}
    if condition_expression:
        params['ConditionExpression'] = condition_expression
    try:
        table.put_item(**params)
        return True
    except ClientError as e:
        if condition_expression and is_conditional_failure(e):
            return False
        logger.error(f"Error putting item into {table_name}: {e}")
        raise

def update_item(
    table_name: str,
    key: Dict[str, Any],
    update_expression: str,
    expression_values: Dict[str, Any],
    expression_names: Optional[Dict[str, str]] = None,
    condition_expression: Optional[str] = None
) -> bool:
    """Update an item in DynamoDB. Returns False when the condition fails."""
    table = get_resource().Table(table_name)

    params = {
        'Key': key,
        'UpdateExpression': update_expression,
        'ExpressionAttributeValues': clean_item(expression_values)
    }

    if expression_names:
        params['ExpressionAttributeNames'] = expression_names
    if condition_expression:
        params['ConditionExpression'] = condition_expression

    try:
        table.update_item(**params)
        return True
    except ClientError as e:
        if condition_expression and is_conditional_failure(e):
            return False
        logger.error(f"Error updating item in {table_name}: {e}")
        raise


def transact_write(transact_items: List[Dict[str, Any]]) -> None:
    """
    All-or-nothing write across tables. Raises ClientError (TransactionCanceledException
    when any condition fails).
    """
    get_client().transact_write_items(TransactItems=transact_items)
