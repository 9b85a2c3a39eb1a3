import logging
from typing import Any, Dict

import httpx
from pydantic import BaseModel, ConfigDict, Field

from backend.app.config import Settings
from backend.app.errors import NotFound, UpstreamError


logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"


class StreamStatus(BaseModel):
    state: str | None = None
    error_reason_code: str | None = Field(default=None, alias="errorReasonCode")
    error_reason_text: str | None = Field(default=None, alias="errorReasonText")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StreamVideo(BaseModel):
    uid: str
    ready_to_stream: bool = Field(default=False, alias="readyToStream")
    duration: float | None = None
    thumbnail: str | None = None
    playback: Dict[str, str | None] = Field(default_factory=dict)
    status: StreamStatus = Field(default_factory=StreamStatus)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DirectUpload(BaseModel):
    uid: str
    upload_url: str = Field(alias="uploadURL")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CloudflareStreamClient:
    def __init__(self, account_id: str, api_token: str, base_url: str = CLOUDFLARE_API_BASE, timeout: float = 10):
        if not account_id or not api_token:
            raise ValueError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_STREAM_API_TOKEN are required")
        self.account_id = account_id
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudflareStreamClient":
        return cls(settings.cloudflare_account_id, settings.cloudflare_stream_api_token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/accounts/{self.account_id}{path}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, self._url(path), headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Cloudflare Stream %s %s failed: %s", method, path, exc)
            raise UpstreamError("Cloudflare Stream request failed") from exc

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.is_success and payload.get("success", False):
            return payload.get("result")

        messages = [entry.get("message", "") for entry in payload.get("errors") or [] if isinstance(entry, dict)]
        detail = "; ".join(message for message in messages if message) or "Cloudflare API error"
        logger.warning("Cloudflare Stream returned %s: %s", response.status_code, detail)
        raise UpstreamError(detail)

    async def create_direct_upload(
        self,
        user_id: str,
        max_duration_seconds: int,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> DirectUpload:
        body = {
            "maxDurationSeconds": max_duration_seconds,
            "meta": {
                "userId": user_id,
                "fileName": file_name or "",
                "mimeType": mime_type or "",
            },
        }
        response = await self._request("POST", "/stream/direct_upload", json=body)
        return DirectUpload.model_validate(self._unwrap(response))

    async def get_video(self, uid: str) -> StreamVideo:
        response = await self._request("GET", f"/stream/{uid}")
        if response.status_code == 404:
            raise NotFound("Video not found at provider")
        return StreamVideo.model_validate(self._unwrap(response))

    async def delete_video(self, uid: str) -> bool:
        """Delete a video; returns False when the provider no longer has it."""

        response = await self._request("DELETE", f"/stream/{uid}")
        if response.status_code == 404:
            logger.info("Cloudflare Stream video %s already deleted", uid)
            return False
        if response.is_success and not response.content:
            return True
        self._unwrap(response)
        return True
