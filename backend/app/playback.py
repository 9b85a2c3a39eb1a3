from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jose import jwt
from pydantic import BaseModel

from backend.app.config import Settings


SIGNED_TOKEN_TTL = timedelta(minutes=10)
SIGNING_ALGORITHM = "HS256"


class PlaybackUrls(BaseModel):
    hls: str
    dash: str
    thumbnail: str
    signed_token: str | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_query_param(url: str, name: str, value: str) -> str:
    parts = urlsplit(url)
    query = [(key, item) for key, item in parse_qsl(parts.query, keep_blank_values=True) if key != name]
    query.append((name, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class PlaybackUrlResolver:
    """Builds HLS/DASH/thumbnail URLs for a Stream video.

    When a signing key pair is configured every URL carries a short-lived
    token whose subject is the video uid; otherwise URLs are public.
    """

    def __init__(
        self,
        delivery_base_url: str,
        signing_key_id: str | None = None,
        signing_key_secret: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.delivery_base_url = delivery_base_url.rstrip("/")
        self.signing_key_id = signing_key_id
        self.signing_key_secret = signing_key_secret
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlaybackUrlResolver":
        return cls(
            delivery_base_url=settings.cloudflare_delivery_base_url,
            signing_key_id=settings.cloudflare_signing_key_id,
            signing_key_secret=settings.cloudflare_signing_key_secret,
        )

    @property
    def signing_enabled(self) -> bool:
        return bool(self.signing_key_id and self.signing_key_secret)

    def absolute(self, url_or_path: str) -> str:
        if urlsplit(url_or_path).scheme in ("http", "https"):
            return url_or_path
        return f"{self.delivery_base_url}/{url_or_path.lstrip('/')}"

    def sign(self, uid: str) -> str | None:
        if not self.signing_enabled:
            return None
        issued_at = int(self.clock().timestamp())
        claims = {
            "sub": uid,
            "iat": issued_at,
            "exp": issued_at + int(SIGNED_TOKEN_TTL.total_seconds()),
        }
        return jwt.encode(
            claims,
            self.signing_key_secret,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.signing_key_id},
        )

    def resolve(
        self,
        uid: str,
        playback: dict | None = None,
        thumbnail: str | None = None,
        sign: bool = True,
    ) -> PlaybackUrls:
        playback = playback or {}
        hls = self.absolute(playback.get("hls") or f"{uid}/manifest/video.m3u8")
        dash = self.absolute(playback.get("dash") or f"{uid}/manifest/video.mpd")
        thumb = self.absolute(thumbnail or f"{uid}/thumbnails/thumbnail.jpg")

        token = self.sign(uid) if sign else None
        if token:
            hls, dash, thumb = (append_query_param(url, "token", token) for url in (hls, dash, thumb))

        return PlaybackUrls(hls=hls, dash=dash, thumbnail=thumb, signed_token=token)
