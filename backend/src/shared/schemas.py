"""
Boundary schema for task-completion webhooks.
Raw webhook JSON is validated once here; every later stage works on the frozen model.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import PayloadValidationError


class GpsCoordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float = Field(validation_alias=AliasChoices('lng', 'lon'), serialization_alias='lng')


class CompletionProof(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    photo_url: Optional[str] = Field(default=None, alias='photoUrl')
    photos: Tuple[str, ...] = ()
    gps_coordinates: Optional[GpsCoordinates] = Field(default=None, alias='gpsCoordinates')
    duration: Optional[float] = None  # minutes
    signature: Optional[str] = None

    @property
    def photo_count(self) -> int:
        urls = set(self.photos)
        if self.photo_url:
            urls.add(self.photo_url)
        return len(urls)


class TaskCompletion(BaseModel):
    """A validated, immutable task-completion notification."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra='ignore')

    task_id: Optional[str] = Field(default=None, alias='taskId')
    worker_id: str = Field(alias='workerId')
    platform_id: Optional[str] = Field(default=None, alias='platformId')
    external_task_id: str = Field(alias='externalTaskId', min_length=1)
    amount: Decimal
    completed_at: datetime = Field(alias='completedAt')
    completion_proof: CompletionProof = Field(default_factory=CompletionProof, alias='completionProof')
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('completed_at')
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def task_ref(self) -> str:
        """Identifier used for the task record and the payment idempotency key."""
        return self.task_id or self.external_task_id

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe dict that round-trips through parse_task_completion."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


def parse_task_completion(body: Any, platform_id: Optional[str] = None) -> TaskCompletion:
    """
    Validate a raw webhook body (str/bytes or already-decoded dict).

    Args:
        body: Raw request body or decoded JSON object
        platform_id: Authenticated platform, overrides any platformId in the body

    Raises:
        PayloadValidationError: Body is not JSON or does not match the schema
    """
    if isinstance(body, (bytes, bytearray)):
        body = body.decode('utf-8')
    if isinstance(body, str):
        try:
            body = json.loads(body, parse_float=Decimal)
        except json.JSONDecodeError:
            raise PayloadValidationError('Request body is not valid JSON')
    if not isinstance(body, dict):
        raise PayloadValidationError('Request body must be a JSON object')

    if platform_id:
        body = {**body, 'platformId': platform_id}

    try:
        return TaskCompletion.model_validate(body)
    except ValidationError as e:
        raise PayloadValidationError(
            'Invalid request payload',
            details=e.errors(include_url=False, include_context=False, include_input=False),
        )
