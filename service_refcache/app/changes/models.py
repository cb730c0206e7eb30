"""
Change-notification event model.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ChangeOperation(str, Enum):
    """Write operations reported by the change feed."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """One change notification: which entity class changed and how.

    Accepts the feed's own field names as well as the hosted store's
    realtime spelling (``table`` / ``eventType`` / ``new``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity_class: str = Field(
        min_length=1,
        validation_alias=AliasChoices("entity_class", "entityClass", "table"),
    )
    operation: ChangeOperation = Field(
        validation_alias=AliasChoices("operation", "eventType", "type"),
    )
    payload: Any = Field(
        default=None,
        validation_alias=AliasChoices("payload", "new", "record"),
    )
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @classmethod
    def from_message(cls, raw: Union[bytes, str, Dict[str, Any]]) -> "ChangeEvent":
        """Decode a feed message; raises ``ValueError`` when malformed."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise ValueError(f"Change message must be a JSON object, got {type(raw).__name__}")
        return cls.model_validate(raw)
