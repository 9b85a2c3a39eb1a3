import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from postgrest.exceptions import APIError
from pydantic import BaseModel, ConfigDict, Field

from backend.app.config import MAX_VIDEO_DURATION_SECONDS
from backend.app.cursors import Cursor, format_timestamp
from backend.app.errors import NotFound, UpstreamError


logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

PROFILE_COLUMNS = "id,username,display_name,bio,avatar_url,is_creator,links,interests,created_at,updated_at"

POST_COLUMNS = ",".join(
    [
        "id",
        "author_id",
        "title",
        "description",
        "topic",
        "location",
        "hashtags",
        "media_type",
        "media_url",
        "thumbnail_url",
        "cloudflare_uid",
        "like_count",
        "bookmark_count",
        "view_count",
        "comment_count",
        "share_count",
        "created_at",
        "updated_at",
    ]
)

FEED_POST_SELECT = f"{POST_COLUMNS},author:profiles!posts_author_id_fkey({PROFILE_COLUMNS})"

COMMENT_SELECT = (
    "id,post_id,author_id,body,created_at,"
    "author:profiles!comments_author_id_fkey(id,username,display_name,avatar_url)"
)


class VideoStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class VideoUpload(BaseModel):
    uid: str
    owner_id: str = Field(alias="user_id")
    status: VideoStatus = VideoStatus.PENDING
    duration_seconds: int | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def exceeds(self, max_duration_seconds: int) -> bool:
        return (
            self.status == VideoStatus.ERROR
            and self.duration_seconds is not None
            and self.duration_seconds > max_duration_seconds
        )


class DuplicateRecord(Exception):
    """Raised when an insert hits a unique constraint."""


def apply_keyset(query: Any, cursor: Cursor | None) -> Any:
    """Restrict ``query`` to rows strictly after ``cursor`` in descending order."""

    if cursor is None:
        return query
    created_at = format_timestamp(cursor.created_at)
    return query.or_(f"created_at.lt.{created_at},and(created_at.eq.{created_at},id.lt.{cursor.id})")


class SupabaseRepository:
    def __init__(self, client: Any):
        self.client = client

    def _execute(self, query: Any, action: str) -> Any:
        try:
            return query.execute()
        except APIError as exc:
            logger.error("Supabase %s failed: %s", action, exc.message)
            raise UpstreamError(f"Failed to {action}") from exc

    def _extract_first(self, response: Any, fallback: Dict[str, Any]) -> Dict[str, Any]:
        data = getattr(response, "data", None)
        if isinstance(data, list) and data:
            return data[0]
        if isinstance(data, dict):
            return data
        if isinstance(response, dict):
            entries = response.get("data") or []
            if entries:
                return entries[0]
        return fallback

    def _extract_list(self, response: Any, fallback: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        data = getattr(response, "data", None)
        if isinstance(data, list):
            return data
        if isinstance(response, dict):
            entries = response.get("data")
            if isinstance(entries, list):
                return entries
        return fallback

    def _extract_scalar(self, response: Any) -> Any:
        data = getattr(response, "data", None)
        if data is None and isinstance(response, dict):
            data = response.get("data")
        if isinstance(data, list):
            return data[0] if data else None
        return data


class VideoUploadRepository(SupabaseRepository):
    """Local projection of Stream videos, keyed by the provider uid."""

    def register_pending(self, uid: str, owner_id: str) -> Dict[str, Any]:
        row = {"uid": uid, "user_id": owner_id, "status": VideoStatus.PENDING.value}
        # Re-registering an existing uid keeps the stored owner and status.
        query = self.client.table("video_uploads").upsert(row, on_conflict="uid", ignore_duplicates=True)
        response = self._execute(query, "register video upload")
        return self._extract_first(response, row)

    def get_upload(self, uid: str) -> VideoUpload | None:
        query = (
            self.client.table("video_uploads")
            .select("uid,user_id,status,duration_seconds,updated_at")
            .eq("uid", uid)
            .limit(1)
        )
        row = self._extract_first(self._execute(query, "load video upload"), {})
        return VideoUpload.model_validate(row) if row else None

    def record_status(
        self,
        uid: str,
        status: VideoStatus,
        duration_seconds: int | None,
        updated_at: datetime,
        max_duration_seconds: int = MAX_VIDEO_DURATION_SECONDS,
    ) -> bool:
        """Write a reconciled status unless a newer write already landed.

        A row already rejected for exceeding ``max_duration_seconds`` is never
        rewritten. Returns False when no row was changed (unknown uid, stale
        write or rejected row).
        """

        query = self.client.rpc(
            "record_video_status",
            {
                "p_uid": uid,
                "p_status": status.value,
                "p_duration_seconds": duration_seconds,
                "p_updated_at": format_timestamp(updated_at),
                "p_max_duration_seconds": max_duration_seconds,
            },
        )
        return bool(self._extract_scalar(self._execute(query, "update video upload")))


class PostRepository(SupabaseRepository):
    def fetch_page(
        self,
        cursor: Cursor | None,
        limit: int,
        topic: str | None = None,
        author_id: str | None = None,
    ) -> List[Dict[str, Any]]:
        query = (
            self.client.table("posts")
            .select(FEED_POST_SELECT)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .limit(limit)
        )
        if topic:
            query = query.eq("topic", topic.lower())
        if author_id:
            query = query.eq("author_id", author_id)
        query = apply_keyset(query, cursor)
        return self._extract_list(self._execute(query, "load posts"), [])

    def create_post(self, row: Dict[str, Any]) -> Dict[str, Any]:
        query = self.client.table("posts").insert(row)
        try:
            response = query.execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise DuplicateRecord("Video is already attached to a post") from exc
            logger.error("Supabase create post failed: %s", exc.message)
            raise UpstreamError("Failed to create post") from exc
        created = self._extract_first(response, {})
        if not created:
            raise UpstreamError("Failed to create post")
        return created


class CommentRepository(SupabaseRepository):
    def fetch_page(self, post_id: str, cursor: Cursor | None, limit: int) -> List[Dict[str, Any]]:
        query = (
            self.client.table("comments")
            .select(COMMENT_SELECT)
            .eq("post_id", post_id)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .limit(limit)
        )
        query = apply_keyset(query, cursor)
        return self._extract_list(self._execute(query, "load comments"), [])

    def create_comment(self, post_id: str, author_id: str, body: str) -> Dict[str, Any]:
        query = self.client.rpc(
            "create_post_comment",
            {"p_post_id": post_id, "p_author_id": author_id, "p_body": body},
        )
        created = self._extract_first(self._execute(query, "create comment"), {})
        if not created:
            raise UpstreamError("Comment was not created")
        return created


class ToggleRepository(SupabaseRepository):
    """Like/save relations and the counters derived from them.

    All mutations go through SQL functions that change the relation and the
    counter in one statement batch, so concurrent toggles cannot drift.
    """

    def _toggle(self, function: str, post_id: str, user_id: str, flag_name: str, flag: bool) -> bool:
        query = self.client.rpc(function, {"p_post_id": post_id, "p_user_id": user_id, flag_name: flag})
        return bool(self._extract_scalar(self._execute(query, function.replace("_", " "))))

    def set_like(self, post_id: str, user_id: str, liked: bool) -> bool:
        return self._toggle("toggle_post_like", post_id, user_id, "p_like", liked)

    def set_save(self, post_id: str, user_id: str, saved: bool) -> bool:
        return self._toggle("toggle_post_save", post_id, user_id, "p_save", saved)

    def increment_share(self, post_id: str) -> int:
        query = self.client.rpc("increment_post_share", {"p_post_id": post_id})
        try:
            response = query.execute()
        except APIError as exc:
            if "post_not_found" in (exc.message or ""):
                raise NotFound("Post not found") from exc
            logger.error("Supabase increment share failed: %s", exc.message)
            raise UpstreamError("Failed to increment share count") from exc
        return int(self._extract_scalar(response) or 0)

    def _post_ids(self, table: str, user_id: str) -> List[str]:
        query = self.client.table(table).select("post_id").eq("user_id", user_id)
        rows = self._extract_list(self._execute(query, f"load {table}"), [])
        return [str(row.get("post_id")) for row in rows]

    def liked_post_ids(self, user_id: str) -> List[str]:
        return self._post_ids("post_likes", user_id)

    def saved_post_ids(self, user_id: str) -> List[str]:
        return self._post_ids("post_saves", user_id)


class ProfileRepository(SupabaseRepository):
    def get_profile(self, user_id: str) -> Dict[str, Any] | None:
        query = self.client.table("profiles").select(PROFILE_COLUMNS).eq("id", user_id).limit(1)
        row = self._extract_first(self._execute(query, "load profile"), {})
        return row or None

    def insert_profile(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.client.table("profiles").insert(row).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise DuplicateRecord(exc.message) from exc
            logger.error("Supabase create profile failed: %s", exc.message)
            raise UpstreamError("Unable to create profile") from exc
        return self._extract_first(response, row)

    def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        query = self.client.table("profiles").update(patch).eq("id", user_id)
        try:
            response = query.execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise DuplicateRecord(exc.message) from exc
            logger.error("Supabase update profile failed: %s", exc.message)
            raise UpstreamError("Failed to update profile") from exc
        updated = self._extract_first(response, {})
        if not updated:
            raise NotFound("Profile not found")
        return updated


class DeviceRepository(SupabaseRepository):
    def upsert_token(self, user_id: str, platform: str, token: str, updated_at: datetime) -> Dict[str, Any]:
        row = {
            "user_id": user_id,
            "platform": platform,
            "token": token,
            "updated_at": format_timestamp(updated_at),
        }
        query = self.client.table("device_tokens").upsert(row, on_conflict="user_id,token")
        return self._extract_first(self._execute(query, "register device token"), row)
