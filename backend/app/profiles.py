import hashlib
import logging
import re
from typing import Annotated, Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, StringConstraints

from backend.app.auth import AuthUser
from backend.app.errors import Conflict, UpstreamError
from backend.app.repositories import DuplicateRecord, ProfileRepository


logger = logging.getLogger(__name__)

USERNAME_PATTERN = r"^[a-z0-9_]{3,24}$"
MAX_HANDLE_ATTEMPTS = 5


class ProfilePatch(BaseModel):
    username: str | None = Field(default=None, min_length=3, max_length=24, pattern=USERNAME_PATTERN)
    display_name: str | None = Field(default=None, alias="displayName", min_length=1, max_length=80)
    bio: str | None = Field(default=None, max_length=160)
    avatar_url: HttpUrl | None = Field(default=None, alias="avatarUrl")
    links: List[HttpUrl] | None = Field(default=None, max_length=8)
    interests: List[Annotated[str, StringConstraints(min_length=1, max_length=32)]] | None = Field(default=None, max_length=12)
    is_creator: bool | None = Field(default=None, alias="isCreator")

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


def sanitize_handle(value: str) -> str:
    return re.sub(r"[^a-z0-9_]", "", value.lower())[:24]


def fallback_handle(user: AuthUser) -> str:
    metadata_handle = user.user_metadata.get("username")
    if isinstance(metadata_handle, str):
        source = metadata_handle
    else:
        source = (user.email or "user").split("@")[0]
    handle = sanitize_handle(source)
    if len(handle) >= 3:
        return handle
    return f"user_{hashlib.sha1(user.id.encode('utf-8')).hexdigest()[:8]}"


def fallback_display_name(user: AuthUser) -> str:
    full_name = user.user_metadata.get("full_name")
    if isinstance(full_name, str) and full_name.strip():
        return full_name.strip()[:80]
    if user.email:
        return user.email.split("@")[0][:80] or "Doomscroll User"
    return "Doomscroll User"


def handle_candidate(base: str, user_id: str, attempt: int) -> str:
    """The handle to try on ``attempt``; later attempts carry a stable suffix."""

    if attempt == 0:
        return base
    suffix = hashlib.sha1(f"{user_id}:{attempt}".encode("utf-8")).hexdigest()[:4]
    return f"{base[:18]}_{suffix}"


def ensure_profile(user: AuthUser, repository: ProfileRepository) -> Dict[str, Any]:
    existing = repository.get_profile(user.id)
    if existing:
        return existing

    base = fallback_handle(user)
    for attempt in range(MAX_HANDLE_ATTEMPTS):
        row = {
            "id": user.id,
            "username": handle_candidate(base, user.id, attempt),
            "display_name": fallback_display_name(user),
            "is_creator": True,
            "links": [],
            "interests": [],
        }
        try:
            return repository.insert_profile(row)
        except DuplicateRecord:
            # A concurrent request may have created this very profile.
            existing = repository.get_profile(user.id)
            if existing:
                return existing
            logger.info("Handle %s taken, retrying profile creation for %s", row["username"], user.id)

    existing = repository.get_profile(user.id)
    if existing:
        return existing
    raise UpstreamError("Unable to create profile")


def update_own_profile(user: AuthUser, patch: ProfilePatch, repository: ProfileRepository) -> Dict[str, Any]:
    ensure_profile(user, repository)
    row = patch.to_row()
    if not row:
        return repository.get_profile(user.id) or {}
    try:
        return repository.update_profile(user.id, row)
    except DuplicateRecord as exc:
        raise Conflict("Username is already taken") from exc
