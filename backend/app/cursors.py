import base64
import json
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator


# Real tokens are about 120 characters long.
MAX_TOKEN_LENGTH = 512


class Cursor(BaseModel):
    """Last row seen in ``(created_at desc, id desc)`` order."""

    created_at: AwareDatetime = Field(alias="createdAt")
    id: UUID

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    @field_validator("created_at")
    @classmethod
    def normalize_to_utc_milliseconds(cls, value: datetime) -> datetime:
        value = value.astimezone(timezone.utc)
        return value.replace(microsecond=(value.microsecond // 1000) * 1000)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Cursor":
        return cls.model_validate({"createdAt": row.get("created_at"), "id": row.get("id")})


def format_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def encode_cursor(cursor: Cursor) -> str:
    payload = json.dumps(
        {"createdAt": format_timestamp(cursor.created_at), "id": str(cursor.id)},
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Cursor | None:
    """Parse a token produced by ``encode_cursor``; ``None`` when it is not one."""

    if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
        return None
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            return None
        if not isinstance(payload.get("createdAt"), str) or not isinstance(payload.get("id"), str):
            return None
        return Cursor.model_validate(payload)
    except (ValueError, TypeError, OverflowError, RecursionError):
        # binascii.Error, UnicodeError, JSONDecodeError and pydantic's
        # ValidationError are all ValueError subclasses.
        return None
