"""Outbox event types, payload allow-lists and delivery records."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from jsonschema import Draft202012Validator

from ..exceptions import OutboxPayloadError

MAX_EVENT_DATA_BYTES = 1024


class EventType(StrEnum):
    JOB_CREATED = "job_created"
    JOB_UPDATED = "job_updated"
    JOB_FAILED = "job_failed"
    JOB_FINALIZED = "job_finalized"
    JOB_DELETED = "job_deleted"


class EntityType(StrEnum):
    CATALOGING_JOB = "cataloging_job"


_STATUS = {"type": "string", "enum": ["pending", "processing", "completed", "failed"]}
_TIMESTAMP = {"type": "string", "format": "date-time", "maxLength": 40}
_OPTIONAL_TIMESTAMP = {"type": ["string", "null"], "format": "date-time", "maxLength": 40}
_IDENTIFIER = {"type": "string", "minLength": 1, "maxLength": 64}


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


# Only identifiers and enum-valued fields may leave through a broadcast channel.
EVENT_PAYLOAD_SCHEMAS: dict[EventType, dict[str, Any]] = {
    EventType.JOB_CREATED: _object_schema(
        {
            "job_id": _IDENTIFIER,
            "status": _STATUS,
            "source_type": {"type": "string", "enum": ["image_capture", "isbn_scan", "manual_isbn"]},
            "created_at": _TIMESTAMP,
        },
        ["job_id", "status", "created_at"],
    ),
    EventType.JOB_UPDATED: _object_schema(
        {
            "job_id": _IDENTIFIER,
            "status": _STATUS,
            "updated_at": _TIMESTAMP,
            "completed_at": _OPTIONAL_TIMESTAMP,
        },
        ["job_id", "status", "updated_at"],
    ),
    EventType.JOB_FAILED: _object_schema(
        {"job_id": _IDENTIFIER, "status": _STATUS, "updated_at": _TIMESTAMP},
        ["job_id", "status", "updated_at"],
    ),
    EventType.JOB_FINALIZED: _object_schema(
        {
            "job_id": _IDENTIFIER,
            "status": _STATUS,
            "finalized_at": _TIMESTAMP,
            "inventory_record_id": _IDENTIFIER,
        },
        ["job_id", "status", "finalized_at", "inventory_record_id"],
    ),
    EventType.JOB_DELETED: _object_schema(
        {"job_id": _IDENTIFIER, "status": _STATUS},
        ["job_id", "status"],
    ),
}

_VALIDATORS = {
    event_type: Draft202012Validator(schema) for event_type, schema in EVENT_PAYLOAD_SCHEMAS.items()
}


def _normalize_value(value: object) -> object:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, StrEnum):
        return value.value
    return str(value)


def serialize_event_data(event_type: EventType | str, data: dict[str, Any]) -> str:
    """Validate ``data`` against the allow-list of ``event_type`` and dump it.

    Raises :class:`OutboxPayloadError` when a field is not allowed, a required
    field is missing or the JSON form exceeds :data:`MAX_EVENT_DATA_BYTES`.
    """

    try:
        resolved = EventType(event_type)
    except ValueError as exc:
        raise OutboxPayloadError(f"unknown event type: {event_type!r}") from exc

    payload = {str(key): _normalize_value(value) for key, value in data.items()}
    errors = sorted(_VALIDATORS[resolved].iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "$"
        raise OutboxPayloadError(
            f"{resolved.value} payload violation at {location}: {first.message}"
        )

    encoded = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    if len(encoded.encode("utf-8")) > MAX_EVENT_DATA_BYTES:
        raise OutboxPayloadError(
            f"{resolved.value} payload exceeds {MAX_EVENT_DATA_BYTES} bytes"
        )
    return encoded


@dataclass(slots=True, frozen=True)
class OutboxEvent:
    """Pending event as handed to a broadcast transport."""

    event_id: int
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any]
    created_at: datetime
    delivery_attempts: int = 0

    def to_message(self) -> dict[str, Any]:
        """Wire form published on the tenant channel."""

        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "data": dict(self.data),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class DeadLetter:
    id: int
    original_event_id: int
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any]
    delivery_attempts: int
    last_error: str
    created_at: datetime
    failed_at: datetime


@dataclass(slots=True, frozen=True)
class DispatchResult:
    """Outcome of one dispatcher tick for one tenant."""

    tenant_id: str
    delivered: int = 0
    failed_event_id: int | None = None
    skipped_reason: str | None = None
    cursor: int | None = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


@dataclass(slots=True, frozen=True)
class TenantOutboxHealth:
    tenant_id: str
    processor_name: str
    cursor_event_id: int
    undelivered_count: int
    events_behind_cursor: int
    retrying_count: int
    oldest_undelivered_age_seconds: float | None
    dead_letter_count: int
    delivered_last_24h: int
    dead_lettered_last_24h: int

    @property
    def success_rate(self) -> float | None:
        total = self.delivered_last_24h + self.dead_lettered_last_24h
        if total == 0:
            return None
        return self.delivered_last_24h / total


__all__ = [
    "DeadLetter",
    "DispatchResult",
    "EVENT_PAYLOAD_SCHEMAS",
    "EntityType",
    "EventType",
    "MAX_EVENT_DATA_BYTES",
    "OutboxEvent",
    "TenantOutboxHealth",
    "serialize_event_data",
]
