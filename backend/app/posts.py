from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, StringConstraints, model_validator

from backend.app.errors import Conflict
from backend.app.media import StatusReconciler
from backend.app.playback import PlaybackUrlResolver, PlaybackUrls


MAX_DESCRIPTION_WORDS = 100
DEFAULT_TOPIC = "general"

Hashtag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=24)]


class ImageMedia(BaseModel):
    type: Literal["image"]
    image_url: HttpUrl = Field(alias="imageUrl")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class VideoMedia(BaseModel):
    type: Literal["video"]
    cloudflare_uid: str = Field(alias="cloudflareUid", min_length=4, max_length=64)

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


Media = Annotated[Union[ImageMedia, VideoMedia], Field(discriminator="type")]


class CreatePostRequest(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: str = Field(min_length=1, max_length=800)
    topic: str | None = Field(default=None, min_length=1, max_length=48)
    location: str | None = Field(default=None, min_length=1, max_length=80)
    hashtags: List[Hashtag] = Field(default_factory=list, max_length=20)
    media: Media

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @model_validator(mode="after")
    def normalize_tags(self) -> "CreatePostRequest":
        self.topic = (self.topic or DEFAULT_TOPIC).lower()
        self.hashtags = [tag.lower().lstrip("#") for tag in self.hashtags if tag.lstrip("#")]
        return self


class ToggleLikeRequest(BaseModel):
    liked: bool

    model_config = ConfigDict(extra="forbid")


class ToggleSaveRequest(BaseModel):
    saved: bool

    model_config = ConfigDict(extra="forbid")


class CreateCommentRequest(BaseModel):
    text: str = Field(min_length=1, max_length=500)

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def count_words(text: str) -> int:
    return len(text.split())


async def verify_video_attachment(
    uid: str,
    author_id: str,
    reconciler: StatusReconciler,
    resolver: PlaybackUrlResolver,
) -> PlaybackUrls:
    """Check that ``uid`` can back a new post by ``author_id``.

    Returns the durable (unsigned) playback URLs to store on the post.
    """

    outcome = await reconciler.reconcile(uid, author_id)
    if outcome.exceeds_limit:
        raise reconciler.limit_violation()
    if not outcome.ready or outcome.video is None:
        raise Conflict("Video is still processing")

    return resolver.resolve(
        uid,
        playback=outcome.video.playback,
        thumbnail=outcome.video.thumbnail,
        sign=False,
    )


def build_post_row(payload: CreatePostRequest, author_id: str, durable: PlaybackUrls | None) -> Dict[str, Any]:
    row = {
        "author_id": author_id,
        "title": payload.title,
        "description": payload.description,
        "topic": payload.topic,
        "location": payload.location,
        "hashtags": payload.hashtags,
    }
    if isinstance(payload.media, VideoMedia):
        row.update(
            media_type="video",
            media_url=durable.hls if durable else "",
            thumbnail_url=durable.thumbnail if durable else None,
            cloudflare_uid=payload.media.cloudflare_uid,
        )
    else:
        row.update(
            media_type="image",
            media_url=str(payload.media.image_url),
            thumbnail_url=None,
            cloudflare_uid=None,
        )
    return row


def to_author(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": profile.get("id"),
        "handle": profile.get("username"),
        "display_name": profile.get("display_name"),
        "bio": profile.get("bio"),
        "avatar_url": profile.get("avatar_url"),
        "is_creator": bool(profile.get("is_creator", True)),
        "links": profile.get("links") or [],
        "interests": profile.get("interests") or [],
    }


def to_blocks(post: Dict[str, Any], playback: PlaybackUrls | None = None) -> List[Dict[str, Any]]:
    post_id = post.get("id")
    description = post.get("description", "")
    blocks: List[Dict[str, Any]] = []

    if post.get("media_type") == "video":
        blocks.append(
            {
                "id": f"video-{post_id}",
                "type": "video",
                "url": playback.hls if playback else post.get("media_url"),
                "dash_url": playback.dash if playback else None,
                "thumbnail_url": playback.thumbnail if playback else post.get("thumbnail_url"),
                "caption": description,
                "signed_token": playback.signed_token if playback else None,
            }
        )
    else:
        blocks.append({"id": f"image-{post_id}", "type": "image", "url": post.get("media_url"), "caption": description})

    blocks.append({"id": f"heading-{post_id}", "type": "heading", "text": post.get("title", "")})
    blocks.append({"id": f"paragraph-{post_id}", "type": "paragraph", "text": description})

    if post.get("location"):
        blocks.append({"id": f"location-{post_id}", "type": "paragraph", "text": f"Location: {post['location']}"})

    hashtags = post.get("hashtags") or []
    if hashtags:
        blocks.append({"id": f"tags-{post_id}", "type": "bullets", "items": [f"#{tag}" for tag in hashtags]})

    return blocks


def to_api_post(
    post: Dict[str, Any],
    author: Dict[str, Any],
    playback: PlaybackUrls | None = None,
) -> Dict[str, Any]:
    return {
        "id": post.get("id"),
        "author": to_author(author),
        "title": post.get("title", ""),
        "blocks": to_blocks(post, playback),
        "topics": [post.get("topic", DEFAULT_TOPIC), *(post.get("hashtags") or [])],
        "created_at": post.get("created_at"),
        "updated_at": post.get("updated_at"),
        "stats": {
            "like_count": int(post.get("like_count", 0)),
            "bookmark_count": int(post.get("bookmark_count", 0)),
            "view_count": int(post.get("view_count", 0)),
            "comment_count": int(post.get("comment_count", 0)),
            "share_count": int(post.get("share_count", 0)),
        },
    }


def to_api_comment(comment: Dict[str, Any]) -> Dict[str, Any] | None:
    author = comment.get("author")
    if not author:
        return None
    return {
        "id": comment.get("id"),
        "text": comment.get("body"),
        "created_at": comment.get("created_at"),
        "author": {
            "id": author.get("id"),
            "handle": author.get("username"),
            "display_name": author.get("display_name"),
            "avatar_url": author.get("avatar_url"),
        },
    }


def playback_for(post: Dict[str, Any], resolver: PlaybackUrlResolver) -> PlaybackUrls | None:
    uid = post.get("cloudflare_uid")
    if post.get("media_type") != "video" or not uid:
        return None
    return resolver.resolve(uid)
