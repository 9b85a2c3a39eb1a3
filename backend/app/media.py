"""Video ingestion lifecycle.

A Stream video moves through ``pending -> processing -> ready`` as the
provider reports progress. Reports arrive from two independent triggers,
the owner polling for status and the provider calling the webhook, and both
go through :class:`StatusReconciler`. The duration cap is enforced on every
reconciliation: the upload-time cap handed to the provider is advisory, so a
video reported longer than the cap is deleted remotely and marked ``error``
locally, whichever trigger sees it first.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat

from backend.app.config import MAX_VIDEO_DURATION_SECONDS
from backend.app.errors import Forbidden, NotFound, PolicyViolation
from backend.app.repositories import VideoStatus, VideoUpload, VideoUploadRepository
from backend.app.stream import StreamVideo


logger = logging.getLogger(__name__)

PROVIDER_STATE_MAP = {
    "ready": VideoStatus.READY,
    "error": VideoStatus.ERROR,
    "pendingupload": VideoStatus.PENDING,
}


class StreamReportStatus(BaseModel):
    state: str | None = None

    model_config = ConfigDict(extra="allow")


class StreamReport(BaseModel):
    """Webhook payload as delivered by the provider."""

    uid: str = Field(min_length=4, max_length=64)
    ready_to_stream: bool | None = Field(default=None, alias="readyToStream")
    duration: NonNegativeFloat | None = None
    status: StreamReportStatus | None = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class UploadGrant(BaseModel):
    uid: str
    upload_url: str
    max_duration_seconds: int


@dataclass
class ReconcileOutcome:
    uid: str
    status: VideoStatus
    duration_seconds: int | None
    exceeds_limit: bool = False
    video: StreamVideo | None = None

    @property
    def ready(self) -> bool:
        return self.status == VideoStatus.READY and not self.exceeds_limit


def round_duration(reported: float | None) -> int:
    """Round half up, so 180.5 seconds counts as 181."""

    if reported is None:
        return 0
    return int(math.floor(reported + 0.5))


def derive_status(state: str | None, ready_to_stream: bool | None) -> VideoStatus:
    if state:
        return PROVIDER_STATE_MAP.get(state.lower(), VideoStatus.PROCESSING)
    return VideoStatus.READY if ready_to_stream else VideoStatus.PROCESSING


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadCoordinator:
    def __init__(
        self,
        stream_client: Any,
        video_repository: VideoUploadRepository,
        max_duration_seconds: int = MAX_VIDEO_DURATION_SECONDS,
    ):
        self.stream_client = stream_client
        self.video_repository = video_repository
        self.max_duration_seconds = max_duration_seconds

    async def request_upload(
        self, owner_id: str, file_name: str | None = None, mime_type: str | None = None
    ) -> UploadGrant:
        upload = await self.stream_client.create_direct_upload(
            user_id=owner_id,
            max_duration_seconds=self.max_duration_seconds,
            file_name=file_name,
            mime_type=mime_type,
        )
        self.video_repository.register_pending(upload.uid, owner_id)
        logger.info("Issued direct upload %s for user %s", upload.uid, owner_id)
        return UploadGrant(
            uid=upload.uid,
            upload_url=upload.upload_url,
            max_duration_seconds=self.max_duration_seconds,
        )


class StatusReconciler:
    def __init__(
        self,
        stream_client: Any,
        video_repository: VideoUploadRepository,
        max_duration_seconds: int = MAX_VIDEO_DURATION_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stream_client = stream_client
        self.video_repository = video_repository
        self.max_duration_seconds = max_duration_seconds
        self.clock = clock

    def limit_violation(self) -> PolicyViolation:
        if self.max_duration_seconds % 60 == 0:
            limit = f"{self.max_duration_seconds // 60}-minute"
        else:
            limit = f"{self.max_duration_seconds}-second"
        return PolicyViolation(f"Video exceeds {limit} limit")

    def _rejected(self, record: VideoUpload) -> ReconcileOutcome:
        return ReconcileOutcome(
            uid=record.uid,
            status=VideoStatus.ERROR,
            duration_seconds=record.duration_seconds,
            exceeds_limit=True,
        )

    async def reconcile(self, uid: str, requester_id: str) -> ReconcileOutcome:
        """Owner-initiated reconciliation against the provider's live state."""

        record = self.video_repository.get_upload(uid)
        if record is None:
            raise NotFound("Video upload not found")
        if record.owner_id != requester_id:
            raise Forbidden("Video upload does not belong to current user")
        if record.exceeds(self.max_duration_seconds):
            return self._rejected(record)

        video = await self.stream_client.get_video(uid)
        return await self._apply(
            uid,
            reported_duration=video.duration,
            state=video.status.state,
            ready_to_stream=video.ready_to_stream,
            video=video,
        )

    async def reconcile_report(self, report: StreamReport) -> ReconcileOutcome:
        """Provider-initiated reconciliation; the payload carries the state."""

        record = self.video_repository.get_upload(report.uid)
        if record is None:
            logger.warning("Webhook for unknown video upload %s", report.uid)
        elif record.exceeds(self.max_duration_seconds):
            return self._rejected(record)

        return await self._apply(
            report.uid,
            reported_duration=report.duration,
            state=report.status.state if report.status else None,
            ready_to_stream=report.ready_to_stream,
        )

    async def _apply(
        self,
        uid: str,
        reported_duration: float | None,
        state: str | None,
        ready_to_stream: bool | None,
        video: StreamVideo | None = None,
    ) -> ReconcileOutcome:
        duration_seconds = round_duration(reported_duration)

        if duration_seconds > self.max_duration_seconds:
            deleted = await self.stream_client.delete_video(uid)
            logger.warning(
                "Video %s is %ss, over the %ss limit; remote delete %s",
                uid,
                duration_seconds,
                self.max_duration_seconds,
                "issued" if deleted else "already done",
            )
            self.video_repository.record_status(
                uid, VideoStatus.ERROR, duration_seconds, self.clock(), self.max_duration_seconds
            )
            return ReconcileOutcome(
                uid=uid,
                status=VideoStatus.ERROR,
                duration_seconds=duration_seconds,
                exceeds_limit=True,
                video=video,
            )

        status = derive_status(state, ready_to_stream)
        stored_duration = duration_seconds if duration_seconds > 0 else None
        if status == VideoStatus.READY and stored_duration is None:
            # A ready video must carry a checked duration.
            status = VideoStatus.PROCESSING
        applied = self.video_repository.record_status(
            uid, status, stored_duration, self.clock(), self.max_duration_seconds
        )
        if not applied:
            # The other trigger may have rejected the video while this one ran.
            record = self.video_repository.get_upload(uid)
            if record is not None and record.exceeds(self.max_duration_seconds):
                logger.info("Video %s was rejected concurrently; keeping the error status", uid)
                return self._rejected(record)
            logger.info("Status %s for video %s not applied (stale or unknown)", status.value, uid)
        return ReconcileOutcome(uid=uid, status=status, duration_seconds=stored_duration, video=video)
