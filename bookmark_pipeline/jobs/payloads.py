"""Queue payload schemas.

Each queue has one fixed payload shape. Payloads travel as camelCase JSON
(``bookmarkId``) and are validated when a job is enqueued, so a worker never
dequeues a body it cannot parse.
"""

from typing import Any, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bookmark_pipeline.core.errors import PayloadValidationError
from bookmark_pipeline.jobs.types import MaintenanceKind, QueueName


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SnapshotPayload(_Payload):
    """Archive one bookmarked page."""

    bookmark_id: str = Field(..., alias="bookmarkId", min_length=1)
    url: str = Field(..., min_length=1)
    owner_id: str = Field(..., alias="ownerId", min_length=1)
    owner_plan: str = Field(..., alias="ownerPlan", min_length=1)

    @field_validator("url")
    @classmethod
    def validate_fetchable(cls, v: str) -> str:
        """Only absolute http(s) URLs can be fetched by the browser."""
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"not a fetchable http(s) URL: {v!r}")
        return v.strip()


class IndexPayload(_Payload):
    """Index the stored snapshot of one bookmark."""

    bookmark_id: str = Field(..., alias="bookmarkId", min_length=1)
    snapshot_path: str = Field(..., alias="snapshotPath", min_length=1)
    owner_id: str = Field(..., alias="ownerId", min_length=1)


class MaintenancePayload(_Payload):
    """Scan one owner's bookmarks, or every owner's when ``owner_id`` is None."""

    type: MaintenanceKind
    owner_id: Optional[str] = Field(default=None, alias="ownerId", min_length=1)


JobPayload = Union[SnapshotPayload, IndexPayload, MaintenancePayload]

PAYLOAD_MODELS: dict[QueueName, type[_Payload]] = {
    QueueName.SNAPSHOT: SnapshotPayload,
    QueueName.INDEX: IndexPayload,
    QueueName.MAINTENANCE: MaintenancePayload,
}


def parse_payload(queue: QueueName, data: Any) -> JobPayload:
    """Validate ``data`` against ``queue``'s schema.

    Accepts an already-built payload model for the right queue as-is.

    Raises:
        PayloadValidationError: If the body does not match the schema
    """
    model = PAYLOAD_MODELS[QueueName(queue)]
    if isinstance(data, model):
        return data
    if isinstance(data, _Payload):
        raise PayloadValidationError(
            f"{type(data).__name__} cannot be submitted to the {QueueName(queue).value} queue"
        )
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {QueueName(queue).value} payload: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False),
        ) from e
