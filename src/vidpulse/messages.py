"""Wire records exchanged over the work and results queues."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

import jsonschema

from .errors import MessageDecodeError
from .models import ITEM_STATUSES
from .utils import json_dumps, utc_now_iso

STATUS_UPDATE = "status_update"
VIDEO_RESULTS = "video_results"

WORK_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["jobId", "item"],
    "properties": {
        "jobId": {"type": "string", "minLength": 1},
        "channelId": {"type": ["string", "null"]},
        "timestamp": {"type": ["string", "null"]},
        "item": {
            "type": "object",
            "required": ["id"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "title": {"type": ["string", "null"]},
            },
        },
    },
}

STATUS_UPDATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "jobId", "itemId", "status"],
    "properties": {
        "type": {"const": STATUS_UPDATE},
        "jobId": {"type": "string", "minLength": 1},
        "channelId": {"type": ["string", "null"]},
        "itemId": {"type": "string", "minLength": 1},
        "status": {"enum": list(ITEM_STATUSES)},
        "timestamp": {"type": ["string", "null"]},
        "error": {"type": ["string", "null"]},
    },
}

ITEM_RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "jobId", "itemId", "results"],
    "properties": {
        "type": {"const": VIDEO_RESULTS},
        "jobId": {"type": "string", "minLength": 1},
        "channelId": {"type": ["string", "null"]},
        "itemId": {"type": "string", "minLength": 1},
        "timestamp": {"type": ["string", "null"]},
        "results": {"type": "object"},
    },
}


@dataclass(frozen=True)
class WorkItem:
    job_id: str
    channel_id: str
    video: dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def item_id(self) -> str:
        return str(self.video["id"])

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "channelId": self.channel_id,
            "item": self.video,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StatusUpdate:
    job_id: str
    channel_id: str
    item_id: str
    status: str
    timestamp: str = field(default_factory=utc_now_iso)
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": STATUS_UPDATE,
            "jobId": self.job_id,
            "channelId": self.channel_id,
            "itemId": self.item_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "error": self.error,
        }


@dataclass(frozen=True)
class ItemResult:
    job_id: str
    channel_id: str
    item_id: str
    result: dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": VIDEO_RESULTS,
            "jobId": self.job_id,
            "channelId": self.channel_id,
            "itemId": self.item_id,
            "timestamp": self.timestamp,
            "results": self.result,
        }


ResultEvent = Union[StatusUpdate, ItemResult]


def encode(message: WorkItem | StatusUpdate | ItemResult) -> bytes:
    return json_dumps(message.to_payload()).encode("utf-8")


def decode_work_item(body: bytes) -> WorkItem:
    payload = _load(body)
    if "item" not in payload and isinstance(payload.get("video"), dict):
        payload["item"] = payload.pop("video")
    _validate(WORK_ITEM_SCHEMA, payload, "work_item")
    return WorkItem(
        job_id=payload["jobId"],
        channel_id=payload.get("channelId") or "",
        video=dict(payload["item"]),
        timestamp=payload.get("timestamp") or utc_now_iso(),
    )


def decode_result_event(body: bytes) -> ResultEvent:
    payload = _load(body)
    if "itemId" not in payload and "videoId" in payload:
        payload["itemId"] = payload.pop("videoId")
    kind = payload.get("type")
    if kind == STATUS_UPDATE:
        _validate(STATUS_UPDATE_SCHEMA, payload, kind)
        return StatusUpdate(
            job_id=payload["jobId"],
            channel_id=payload.get("channelId") or "",
            item_id=payload["itemId"],
            status=payload["status"],
            timestamp=payload.get("timestamp") or utc_now_iso(),
            error=payload.get("error"),
        )
    if kind == VIDEO_RESULTS:
        _validate(ITEM_RESULT_SCHEMA, payload, kind)
        return ItemResult(
            job_id=payload["jobId"],
            channel_id=payload.get("channelId") or "",
            item_id=payload["itemId"],
            result=dict(payload["results"]),
            timestamp=payload.get("timestamp") or utc_now_iso(),
        )
    raise MessageDecodeError(f"unknown message type {kind!r}")


def _load(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageDecodeError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise MessageDecodeError("payload must be a JSON object")
    return payload


def _validate(schema: dict[str, Any], payload: dict[str, Any], kind: str) -> None:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise MessageDecodeError(f"invalid {kind} message: {exc.message}") from exc
