import base64
import unittest
import uuid
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from backend.app.main import (
    app,
    get_comment_repository,
    get_identity_verifier,
    get_playback_resolver,
    get_post_repository,
    get_profile_repository,
    get_stream_client,
    get_toggle_repository,
    get_video_repository,
)
from backend.app.playback import PlaybackUrlResolver
from backend.tests.fakes import (
    USER_A,
    USER_B,
    FakeCommentRepository,
    FakeIdentityVerifier,
    FakePostRepository,
    FakeProfileRepository,
    FakeStreamClient,
    FakeToggleRepository,
    FakeVideoRepository,
    auth_header,
)


START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def profile_row(user, username: str) -> dict:
    return {
        "id": user.id,
        "username": username,
        "display_name": username.title(),
        "is_creator": True,
        "links": [],
        "interests": [],
    }


class PostRoutesTestCase(unittest.TestCase):
    def setUp(self):
        self.profiles = FakeProfileRepository()
        self.alice = self.profiles.insert_profile(profile_row(USER_A, "alice"))
        self.bob = self.profiles.insert_profile(profile_row(USER_B, "bob"))
        self.posts = FakePostRepository(self.profiles)
        self.toggles = FakeToggleRepository()
        self.comments = FakeCommentRepository(self.profiles)
        self.stream = FakeStreamClient()
        self.videos = FakeVideoRepository()

        app.dependency_overrides[get_identity_verifier] = lambda: FakeIdentityVerifier(USER_A, USER_B)
        app.dependency_overrides[get_profile_repository] = lambda: self.profiles
        app.dependency_overrides[get_post_repository] = lambda: self.posts
        app.dependency_overrides[get_toggle_repository] = lambda: self.toggles
        app.dependency_overrides[get_comment_repository] = lambda: self.comments
        app.dependency_overrides[get_stream_client] = lambda: self.stream
        app.dependency_overrides[get_video_repository] = lambda: self.videos
        app.dependency_overrides[get_playback_resolver] = lambda: PlaybackUrlResolver("https://videodelivery.net")
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides = {}


class TestFeed(PostRoutesTestCase):
    def seed(self, count: int):
        for index in range(count):
            author = self.alice if index % 2 else self.bob
            # Pairs of posts share a timestamp.
            self.posts.add(author, START + timedelta(seconds=index // 2), topic="cats" if index % 3 else "dogs")

    def test_feed_pages_through_everything_once(self):
        self.seed(13)
        seen, cursor = [], None
        while True:
            params = {"limit": 4}
            if cursor:
                params["cursor"] = cursor
            body = self.client.get("/v1/feed", params=params).json()
            seen.extend(item["id"] for item in body["items"])
            cursor = body["next_cursor"]
            if cursor is None:
                break

        self.assertEqual(len(seen), 13)
        self.assertEqual(len(set(seen)), 13)

    def test_feed_defaults_and_clamps_limit(self):
        self.seed(40)

        self.assertEqual(len(self.client.get("/v1/feed").json()["items"]), 10)
        self.assertEqual(len(self.client.get("/v1/feed", params={"limit": 500}).json()["items"]), 30)
        self.assertEqual(len(self.client.get("/v1/feed", params={"limit": 0}).json()["items"]), 1)

    def test_feed_topic_filter(self):
        self.seed(9)

        body = self.client.get("/v1/feed", params={"topic": "Dogs", "limit": 30}).json()

        self.assertEqual(len(body["items"]), 3)
        self.assertTrue(all(item["topics"][0] == "dogs" for item in body["items"]))

    def test_invalid_cursor_is_a_client_error(self):
        response = self.client.get("/v1/feed", params={"cursor": "garbage"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "validation_error", "detail": "Invalid cursor"})

    def test_deeply_nested_cursor_is_a_client_error(self):
        token = base64.urlsafe_b64encode(b"[" * 5000).decode("ascii").rstrip("=")

        response = self.client.get("/v1/feed", params={"cursor": token})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation_error")

    def test_user_posts(self):
        self.seed(6)

        body = self.client.get(f"/v1/users/{USER_A.id}/posts").json()

        self.assertEqual(len(body["items"]), 3)
        self.assertTrue(all(item["author"]["handle"] == "alice" for item in body["items"]))
        self.assertIsNone(body["next_cursor"])

    def test_feed_item_shape(self):
        self.posts.add(self.alice, START, title="Hello", location="Lisbon", hashtags=["sun"])

        item = self.client.get("/v1/feed").json()["items"][0]

        self.assertEqual(item["title"], "Hello")
        self.assertEqual(item["author"]["display_name"], "Alice")
        self.assertEqual([block["type"] for block in item["blocks"]], ["image", "heading", "paragraph", "paragraph", "bullets"])
        self.assertEqual(item["topics"], ["general", "sun"])
        self.assertEqual(item["stats"]["like_count"], 0)


class TestCreatePost(PostRoutesTestCase):
    def ready_video(self, uid: str, owner=USER_A, duration: float = 30):
        self.videos.register_pending(uid, owner.id)
        self.stream.put_video(uid, readyToStream=True, duration=duration, status={"state": "ready"})

    def test_image_post(self):
        response = self.client.post(
            "/v1/posts",
            json={
                "title": "Lunch",
                "description": "Best ramen in town",
                "topic": "Food",
                "hashtags": ["#Ramen", "noodles"],
                "media": {"type": "image", "imageUrl": "https://img.example.com/ramen.jpg"},
            },
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 200, response.text)
        post = response.json()["post"]
        self.assertEqual(post["topics"], ["food", "ramen", "noodles"])
        self.assertEqual(post["blocks"][0]["url"], "https://img.example.com/ramen.jpg")
        self.assertEqual(post["author"]["handle"], "alice")

    def test_requires_auth(self):
        response = self.client.post("/v1/posts", json={})

        self.assertEqual(response.status_code, 401)

    def test_description_word_limit(self):
        response = self.client.post(
            "/v1/posts",
            json={
                "title": "Too long",
                "description": " ".join(["word"] * 101),
                "media": {"type": "image", "imageUrl": "https://img.example.com/a.jpg"},
            },
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json(), {"error": "policy_violation", "detail": "Description cannot exceed 100 words"})

    def test_unknown_media_type(self):
        response = self.client.post(
            "/v1/posts",
            json={"title": "x", "description": "y", "media": {"type": "audio"}},
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 400)

    def test_video_post_stores_durable_urls(self):
        self.ready_video("vid001")

        response = self.client.post(
            "/v1/posts",
            json={"title": "Clip", "description": "Short one", "media": {"type": "video", "cloudflareUid": "vid001"}},
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 200, response.text)
        stored = self.posts.rows[-1]
        self.assertEqual(stored["media_type"], "video")
        self.assertEqual(stored["media_url"], "https://videodelivery.net/vid001/manifest/video.m3u8")
        self.assertEqual(stored["thumbnail_url"], "https://videodelivery.net/vid001/thumbnails/thumbnail.jpg")

    def test_video_still_processing(self):
        self.videos.register_pending("vid002", USER_A.id)
        self.stream.put_video("vid002", readyToStream=False, status={"state": "inprogress"})

        response = self.client.post(
            "/v1/posts",
            json={"title": "Clip", "description": "Short one", "media": {"type": "video", "cloudflareUid": "vid002"}},
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json(), {"error": "conflict", "detail": "Video is still processing"})

    def test_unregistered_video(self):
        response = self.client.post(
            "/v1/posts",
            json={"title": "Clip", "description": "Short one", "media": {"type": "video", "cloudflareUid": "vid404"}},
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 404)

    def test_video_cannot_back_two_posts(self):
        self.ready_video("vid003")
        payload = {"title": "Clip", "description": "Short one", "media": {"type": "video", "cloudflareUid": "vid003"}}

        first = self.client.post("/v1/posts", json=payload, headers=auth_header(USER_A))
        second = self.client.post("/v1/posts", json=payload, headers=auth_header(USER_A))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 409)

    def test_overlong_video_discovered_at_post_time(self):
        self.ready_video("vid004", duration=181)

        response = self.client.post(
            "/v1/posts",
            json={"title": "Clip", "description": "Long one", "media": {"type": "video", "cloudflareUid": "vid004"}},
            headers=auth_header(USER_A),
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.stream.delete_calls, ["vid004"])
        self.assertEqual(self.videos.rows["vid004"]["status"], "error")


class TestEngagement(PostRoutesTestCase):
    def setUp(self):
        super().setUp()
        self.post = self.posts.add(self.bob, START)
        self.toggles.share_counts[self.post["id"]] = 0

    def like(self, liked: bool, user=USER_A):
        return self.client.post(f"/v1/posts/{self.post['id']}/likes", json={"liked": liked}, headers=auth_header(user))

    def test_like_is_idempotent(self):
        first = self.like(True).json()
        second = self.like(True).json()

        self.assertEqual(first, {"ok": True, "changed": True})
        self.assertEqual(second, {"ok": True, "changed": False})
        self.assertEqual(self.toggles.like_counts[self.post["id"]], 1)

    def test_like_then_unlike_restores_count(self):
        self.like(True)
        self.like(False)
        response = self.like(False)

        self.assertFalse(response.json()["changed"])
        self.assertEqual(self.toggles.like_counts[self.post["id"]], 0)

    def test_save_and_list(self):
        self.client.post(f"/v1/posts/{self.post['id']}/saves", json={"saved": True}, headers=auth_header(USER_A))
        self.like(True)

        saves = self.client.get("/v1/me/saves", headers=auth_header(USER_A)).json()
        likes = self.client.get("/v1/me/likes", headers=auth_header(USER_A)).json()
        others = self.client.get("/v1/me/likes", headers=auth_header(USER_B)).json()

        self.assertEqual(saves, {"postIds": [self.post["id"]]})
        self.assertEqual(likes, {"postIds": [self.post["id"]]})
        self.assertEqual(others, {"postIds": []})

    def test_toggle_requires_boolean(self):
        response = self.client.post(
            f"/v1/posts/{self.post['id']}/likes", json={"liked": "maybe"}, headers=auth_header(USER_A)
        )

        self.assertEqual(response.status_code, 400)

    def test_share(self):
        first = self.client.post(f"/v1/posts/{self.post['id']}/share").json()
        second = self.client.post(f"/v1/posts/{self.post['id']}/share").json()

        self.assertEqual(first["shareCount"], 1)
        self.assertEqual(second["shareCount"], 2)

    def test_share_unknown_post(self):
        response = self.client.post(f"/v1/posts/{uuid.uuid4()}/share")

        self.assertEqual(response.status_code, 404)

    def test_comments(self):
        for text in ("first", "second", "third"):
            created = self.client.post(
                f"/v1/posts/{self.post['id']}/comments", json={"text": text}, headers=auth_header(USER_A)
            )
            self.assertEqual(created.status_code, 200, created.text)
            self.assertEqual(created.json()["comment"]["author"]["handle"], "alice")

        page = self.client.get(f"/v1/posts/{self.post['id']}/comments", params={"limit": 2}).json()
        rest = self.client.get(
            f"/v1/posts/{self.post['id']}/comments", params={"cursor": page["next_cursor"]}
        ).json()

        texts = [item["text"] for item in page["items"] + rest["items"]]
        self.assertEqual(sorted(texts), ["first", "second", "third"])
        self.assertIsNone(rest["next_cursor"])
        self.assertEqual(self.comments.comment_counts[self.post["id"]], 3)

    def test_blank_comment_rejected(self):
        response = self.client.post(
            f"/v1/posts/{self.post['id']}/comments", json={"text": "   "}, headers=auth_header(USER_A)
        )

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
