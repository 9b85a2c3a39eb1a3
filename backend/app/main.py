import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from backend.app.auth import AuthUser, SupabaseIdentityVerifier
from backend.app.config import Settings, configure_logging, get_settings
from backend.app.db import get_supabase_client
from backend.app.errors import Conflict, PolicyViolation, Unauthorized, register_error_handlers
from backend.app.media import StatusReconciler, StreamReport, UploadCoordinator
from backend.app.pagination import COMMENT_LIMITS, FEED_LIMITS, FeedPaginator, parse_cursor_param
from backend.app.playback import PlaybackUrlResolver
from backend.app.posts import (
    MAX_DESCRIPTION_WORDS,
    CreateCommentRequest,
    CreatePostRequest,
    ToggleLikeRequest,
    ToggleSaveRequest,
    VideoMedia,
    build_post_row,
    count_words,
    playback_for,
    to_api_comment,
    to_api_post,
    verify_video_attachment,
)
from backend.app.profiles import ProfilePatch, ensure_profile, update_own_profile
from backend.app.repositories import (
    CommentRepository,
    DeviceRepository,
    DuplicateRecord,
    PostRepository,
    ProfileRepository,
    ToggleRepository,
    VideoUploadRepository,
)
from backend.app.stream import CloudflareStreamClient


logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: str | None = None


class DirectUploadRequest(CamelModel):
    file_name: str | None = Field(default=None, min_length=1, max_length=255)
    mime_type: str | None = Field(default=None, min_length=1, max_length=255)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class UploadGrantResponse(CamelModel):
    uid: str
    upload_url: str
    max_duration_seconds: int


class PlaybackResponse(CamelModel):
    hls: str
    dash: str
    thumbnail: str
    signed_token: str | None = None


class VideoStatusResponse(CamelModel):
    uid: str
    ready_to_stream: bool
    duration_seconds: int | None = None
    state: str
    error_code: str | None = None
    error_text: str | None = None
    playback: PlaybackResponse


class WebhookAck(BaseModel):
    ok: bool = True


class RegisterDeviceRequest(BaseModel):
    platform: Literal["ios", "android"]
    token: str = Field(min_length=16, max_length=4096)

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _storage_client() -> Any:
    try:
        return get_supabase_client()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_video_repository() -> VideoUploadRepository:
    return VideoUploadRepository(_storage_client())


def get_post_repository() -> PostRepository:
    return PostRepository(_storage_client())


def get_comment_repository() -> CommentRepository:
    return CommentRepository(_storage_client())


def get_toggle_repository() -> ToggleRepository:
    return ToggleRepository(_storage_client())


def get_profile_repository() -> ProfileRepository:
    return ProfileRepository(_storage_client())


def get_device_repository() -> DeviceRepository:
    return DeviceRepository(_storage_client())


def get_stream_client(settings: Settings = Depends(get_settings)) -> CloudflareStreamClient:
    try:
        return CloudflareStreamClient.from_settings(settings)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_playback_resolver(settings: Settings = Depends(get_settings)) -> PlaybackUrlResolver:
    return PlaybackUrlResolver.from_settings(settings)


def get_identity_verifier() -> SupabaseIdentityVerifier:
    return SupabaseIdentityVerifier(_storage_client())


def get_current_user(
    authorization: str | None = Header(default=None),
    verifier: SupabaseIdentityVerifier = Depends(get_identity_verifier),
) -> AuthUser:
    return verifier.authenticate(authorization)


def verify_webhook_secret(configured: str | None, provided: str | None) -> bool:
    if not configured:
        return True
    if not provided:
        return False
    return hmac.compare_digest(configured.encode("utf-8"), provided.encode("utf-8"))


def require_webhook_secret(
    webhook_auth: str | None = Header(default=None, alias="Webhook-Auth"),
    settings: Settings = Depends(get_settings),
) -> None:
    if not verify_webhook_secret(settings.cloudflare_webhook_secret, webhook_auth):
        logger.warning("Rejected Stream webhook: bad secret")
        raise Unauthorized("Invalid Cloudflare webhook secret")


def post_page(
    repository: PostRepository,
    resolver: PlaybackUrlResolver,
    cursor_token: str | None,
    limit: int | None,
    topic: str | None = None,
    author_id: str | None = None,
) -> Dict[str, Any]:
    cursor = parse_cursor_param(cursor_token)
    page = FeedPaginator(FEED_LIMITS).page(
        lambda bound, size: repository.fetch_page(bound, size, topic=topic, author_id=author_id),
        cursor,
        limit,
    )
    items = [
        to_api_post(row, row["author"], playback_for(row, resolver))
        for row in page.rows
        if row.get("author")
    ]
    return {"items": items, "next_cursor": page.next_cursor}


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    application = FastAPI(title="Doomscroll API", version="0.1.0")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=bool(settings.cors_origin_list),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(application)

    @application.get("/", response_model=HealthResponse, tags=["health"])
    def root() -> HealthResponse:
        return HealthResponse(service="doomscroll-backend", status="ok")

    @application.get("/health", response_model=HealthResponse, tags=["health"])
    def health() -> HealthResponse:
        return HealthResponse(service="api", status="ok", timestamp=datetime.now(timezone.utc).isoformat())

    @application.get("/v1/profile/me", tags=["profile"])
    def get_my_profile(
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
    ) -> Dict[str, Any]:
        return {"profile": ensure_profile(user, profiles)}

    @application.put("/v1/profile/me", tags=["profile"])
    def update_my_profile(
        payload: ProfilePatch,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
    ) -> Dict[str, Any]:
        return {"profile": update_own_profile(user, payload, profiles)}

    @application.post(
        "/v1/media/video/direct-upload", response_model=UploadGrantResponse, tags=["media"]
    )
    async def create_upload_grant(
        payload: DirectUploadRequest | None = None,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        stream_client: CloudflareStreamClient = Depends(get_stream_client),
        videos: VideoUploadRepository = Depends(get_video_repository),
    ) -> UploadGrantResponse:
        payload = payload or DirectUploadRequest()
        profile = ensure_profile(user, profiles)
        grant = await UploadCoordinator(stream_client, videos).request_upload(
            str(profile.get("id", user.id)), payload.file_name, payload.mime_type
        )
        return UploadGrantResponse(
            uid=grant.uid,
            upload_url=grant.upload_url,
            max_duration_seconds=grant.max_duration_seconds,
        )

    @application.get(
        "/v1/media/video/{uid}/status", response_model=VideoStatusResponse, tags=["media"]
    )
    async def get_video_status(
        uid: str,
        user: AuthUser = Depends(get_current_user),
        stream_client: CloudflareStreamClient = Depends(get_stream_client),
        videos: VideoUploadRepository = Depends(get_video_repository),
        resolver: PlaybackUrlResolver = Depends(get_playback_resolver),
    ) -> VideoStatusResponse:
        reconciler = StatusReconciler(stream_client, videos)
        outcome = await reconciler.reconcile(uid, user.id)
        if outcome.exceeds_limit:
            raise reconciler.limit_violation()

        video = outcome.video
        playback = resolver.resolve(uid, playback=video.playback, thumbnail=video.thumbnail)
        return VideoStatusResponse(
            uid=uid,
            ready_to_stream=outcome.ready,
            duration_seconds=outcome.duration_seconds,
            state=outcome.status.value,
            error_code=video.status.error_reason_code,
            error_text=video.status.error_reason_text,
            playback=PlaybackResponse(**playback.model_dump()),
        )

    @application.post(
        "/v1/webhooks/cloudflare/stream",
        response_model=WebhookAck,
        dependencies=[Depends(require_webhook_secret)],
        tags=["webhooks"],
    )
    async def handle_stream_webhook(
        payload: StreamReport,
        stream_client: CloudflareStreamClient = Depends(get_stream_client),
        videos: VideoUploadRepository = Depends(get_video_repository),
    ) -> WebhookAck:
        outcome = await StatusReconciler(stream_client, videos).reconcile_report(payload)
        if outcome.exceeds_limit:
            logger.info("Webhook for %s handled as duration policy violation", payload.uid)
        return WebhookAck()

    @application.get("/v1/feed", tags=["posts"])
    def list_feed(
        cursor: str | None = Query(default=None),
        limit: int | None = Query(default=None),
        topic: str | None = Query(default=None, min_length=1, max_length=48),
        posts: PostRepository = Depends(get_post_repository),
        resolver: PlaybackUrlResolver = Depends(get_playback_resolver),
    ) -> Dict[str, Any]:
        return post_page(posts, resolver, cursor, limit, topic=topic.strip() if topic else None)

    @application.get("/v1/users/{user_id}/posts", tags=["posts"])
    def list_user_posts(
        user_id: UUID,
        cursor: str | None = Query(default=None),
        limit: int | None = Query(default=None),
        posts: PostRepository = Depends(get_post_repository),
        resolver: PlaybackUrlResolver = Depends(get_playback_resolver),
    ) -> Dict[str, Any]:
        return post_page(posts, resolver, cursor, limit, author_id=str(user_id))

    @application.post("/v1/posts", tags=["posts"])
    async def create_post(
        payload: CreatePostRequest,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        posts: PostRepository = Depends(get_post_repository),
        videos: VideoUploadRepository = Depends(get_video_repository),
        stream_client: CloudflareStreamClient = Depends(get_stream_client),
        resolver: PlaybackUrlResolver = Depends(get_playback_resolver),
    ) -> Dict[str, Any]:
        if count_words(payload.description) > MAX_DESCRIPTION_WORDS:
            raise PolicyViolation(f"Description cannot exceed {MAX_DESCRIPTION_WORDS} words")

        author = ensure_profile(user, profiles)
        durable = None
        if isinstance(payload.media, VideoMedia):
            durable = await verify_video_attachment(
                payload.media.cloudflare_uid,
                user.id,
                StatusReconciler(stream_client, videos),
                resolver,
            )

        try:
            created = posts.create_post(build_post_row(payload, user.id, durable))
        except DuplicateRecord as exc:
            raise Conflict(str(exc)) from exc

        logger.info("Created %s post %s for %s", created.get("media_type"), created.get("id"), user.id)
        return {"post": to_api_post(created, author, playback_for(created, resolver))}

    @application.post("/v1/posts/{post_id}/likes", tags=["posts"])
    def toggle_like(
        post_id: UUID,
        payload: ToggleLikeRequest,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        toggles: ToggleRepository = Depends(get_toggle_repository),
    ) -> Dict[str, Any]:
        ensure_profile(user, profiles)
        changed = toggles.set_like(str(post_id), user.id, payload.liked)
        return {"ok": True, "changed": changed}

    @application.post("/v1/posts/{post_id}/saves", tags=["posts"])
    def toggle_save(
        post_id: UUID,
        payload: ToggleSaveRequest,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        toggles: ToggleRepository = Depends(get_toggle_repository),
    ) -> Dict[str, Any]:
        ensure_profile(user, profiles)
        changed = toggles.set_save(str(post_id), user.id, payload.saved)
        return {"ok": True, "changed": changed}

    @application.post("/v1/posts/{post_id}/share", tags=["posts"])
    def share_post(
        post_id: UUID,
        toggles: ToggleRepository = Depends(get_toggle_repository),
    ) -> Dict[str, Any]:
        return {"ok": True, "shareCount": toggles.increment_share(str(post_id))}

    @application.get("/v1/posts/{post_id}/comments", tags=["comments"])
    def list_comments(
        post_id: UUID,
        cursor: str | None = Query(default=None),
        limit: int | None = Query(default=None),
        comments: CommentRepository = Depends(get_comment_repository),
    ) -> Dict[str, Any]:
        bound = parse_cursor_param(cursor)
        page = FeedPaginator(COMMENT_LIMITS).page(
            lambda after, size: comments.fetch_page(str(post_id), after, size),
            bound,
            limit,
        )
        items = [item for item in (to_api_comment(row) for row in page.rows) if item is not None]
        return {"items": items, "next_cursor": page.next_cursor}

    @application.post("/v1/posts/{post_id}/comments", tags=["comments"])
    def create_comment(
        post_id: UUID,
        payload: CreateCommentRequest,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        comments: CommentRepository = Depends(get_comment_repository),
    ) -> Dict[str, Any]:
        profile = ensure_profile(user, profiles)
        created = comments.create_comment(str(post_id), user.id, payload.text)
        comment = to_api_comment({**created, "author": profile})
        return {"comment": comment}

    @application.get("/v1/me/likes", tags=["posts"])
    def my_likes(
        user: AuthUser = Depends(get_current_user),
        toggles: ToggleRepository = Depends(get_toggle_repository),
    ) -> Dict[str, List[str]]:
        return {"postIds": toggles.liked_post_ids(user.id)}

    @application.get("/v1/me/saves", tags=["posts"])
    def my_saves(
        user: AuthUser = Depends(get_current_user),
        toggles: ToggleRepository = Depends(get_toggle_repository),
    ) -> Dict[str, List[str]]:
        return {"postIds": toggles.saved_post_ids(user.id)}

    @application.post("/v1/devices/push-token", tags=["devices"])
    def register_push_token(
        payload: RegisterDeviceRequest,
        user: AuthUser = Depends(get_current_user),
        profiles: ProfileRepository = Depends(get_profile_repository),
        devices: DeviceRepository = Depends(get_device_repository),
    ) -> Dict[str, bool]:
        ensure_profile(user, profiles)
        devices.upsert_token(user.id, payload.platform, payload.token, datetime.now(timezone.utc))
        return {"ok": True}

    return application


app = create_app()
