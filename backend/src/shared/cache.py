"""
Keyed stores with expiry: short-TTL caches and the payment idempotency store.
These are the only mutable shared state in the pipeline and are injected
into the components that use them.
"""
import json
import threading
import time
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from .config import config
from .logging import logger
from .utils import DecimalEncoder

IN_FLIGHT = 'in_flight'
COMPLETED = 'completed'
SWEEP_EVERY = 256


class TTLStore:
    """
    Thread-safe dict with per-entry expiry. Expired entries are dropped on read,
    and every `sweep_every` writes the whole store is swept so keys that are
    never read again do not accumulate.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic, sweep_every: int = SWEEP_EVERY):
        self.ttl_seconds = ttl_seconds
        self.sweep_every = sweep_every
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self._writes = 0
        self._lock = threading.Lock()

    def _live(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + (ttl or self.ttl_seconds))
            self._after_write()

    def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> Optional[Any]:
        """
        Atomic check-and-mark.

        Returns:
            None if the key was free and is now set to value, otherwise the live value
        """
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                return entry[0]
            self._entries[key] = (value, self._clock() + (ttl or self.ttl_seconds))
            self._after_write()
            return None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]
        self._writes = 0
        return len(expired)

    def _after_write(self) -> None:
        self._writes += 1
        if self._writes >= self.sweep_every:
            self._sweep_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class InMemoryIdempotencyStore:
    """
    Idempotency keys held in process memory.

    begin() marks a key in-flight and returns None, or returns the existing
    entry ({'state': ..., 'result': ...}) without touching it.
    """

    def __init__(self, ttl_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self._store = TTLStore(ttl_seconds or config.IDEMPOTENCY_TTL_SECONDS, clock=clock)

    def begin(self, key: str) -> Optional[Dict[str, Any]]:
        return self._store.set_if_absent(key, {'state': IN_FLIGHT, 'result': None})

    def complete(self, key: str, result: Dict[str, Any]) -> None:
        self._store.set(key, {'state': COMPLETED, 'result': result})

    def release(self, key: str) -> None:
        self._store.delete(key)

    def sweep(self) -> int:
        return self._store.sweep()


class DynamoIdempotencyStore:
    """
    Same contract as InMemoryIdempotencyStore, shared across Lambda containers.
    begin() is a conditional put, so two concurrent deliveries cannot both win.
    Table needs TTL enabled on the 'expiresAt' attribute.
    """

    def __init__(self, table_name: str = None, ttl_seconds: int = None, table=None):
        self.ttl_seconds = int(ttl_seconds or config.IDEMPOTENCY_TTL_SECONDS)
        if table is None:
            dynamodb = boto3.resource('dynamodb', region_name=config.AWS_REGION)
            table = dynamodb.Table(table_name or config.IDEMPOTENCY_TABLE)
        self.table = table

    def begin(self, key: str) -> Optional[Dict[str, Any]]:
        now = int(time.time())
        try:
            self.table.put_item(
                Item={
                    'idempotencyKey': key,
                    'state': IN_FLIGHT,
                    'expiresAt': now + self.ttl_seconds,
                },
                ConditionExpression='attribute_not_exists(idempotencyKey) OR expiresAt < :now',
                ExpressionAttributeValues={':now': now},
            )
            return None
        except ClientError as e:
            if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                raise
        item = self.table.get_item(Key={'idempotencyKey': key}, ConsistentRead=True).get('Item') or {}
        result = item.get('result')
        return {
            'state': item.get('state', IN_FLIGHT),
            'result': json.loads(result) if result else None,
        }

    def complete(self, key: str, result: Dict[str, Any]) -> None:
        self.table.update_item(
            Key={'idempotencyKey': key},
            UpdateExpression='SET #state = :state, #result = :result, expiresAt = :exp',
            ExpressionAttributeNames={'#state': 'state', '#result': 'result'},
            ExpressionAttributeValues={
                ':state': COMPLETED,
                ':result': json.dumps(result, cls=DecimalEncoder),
                ':exp': int(time.time()) + self.ttl_seconds,
            },
        )

    def release(self, key: str) -> None:
        try:
            self.table.delete_item(Key={'idempotencyKey': key})
        except ClientError as e:
            # Key expires on its own; log and move on
            logger.error(f"Could not release idempotency key {key}: {e}")

    def sweep(self) -> int:
        # DynamoDB TTL expires items server-side
        return 0
