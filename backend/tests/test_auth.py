import unittest
from types import SimpleNamespace
from unittest import mock

import httpx
from fastapi.testclient import TestClient
from supabase import AuthApiError, AuthRetryableError

from backend.app.auth import SupabaseIdentityVerifier, read_bearer_token
from backend.app.errors import Unauthorized, UpstreamError
from backend.app.main import app, get_identity_verifier, get_profile_repository
from backend.tests.fakes import FakeProfileRepository


def supabase_client(user=None, error: Exception | None = None) -> mock.MagicMock:
    client = mock.MagicMock()
    if error is not None:
        client.auth.get_user.side_effect = error
    else:
        client.auth.get_user.return_value = SimpleNamespace(user=user)
    return client


class TestBearerToken(unittest.TestCase):
    def test_reads_bearer_token(self):
        self.assertEqual(read_bearer_token("Bearer abc.def"), "abc.def")
        self.assertEqual(read_bearer_token("bearer  abc.def "), "abc.def")

    def test_rejects_other_schemes(self):
        for header in (None, "", "Basic abc", "Bearer", "Bearer   ", "abc.def"):
            with self.subTest(header=header):
                self.assertIsNone(read_bearer_token(header))


class TestSupabaseIdentityVerifier(unittest.TestCase):
    def test_resolves_user(self):
        user = SimpleNamespace(id="u-1", email="alice@example.com", user_metadata={"username": "alice"})
        verifier = SupabaseIdentityVerifier(supabase_client(user=user))

        resolved = verifier.authenticate("Bearer good-token")

        self.assertEqual(resolved.id, "u-1")
        self.assertEqual(resolved.user_metadata, {"username": "alice"})

    def test_missing_user_is_unauthorized(self):
        verifier = SupabaseIdentityVerifier(supabase_client(user=None))

        with self.assertRaises(Unauthorized):
            verifier.authenticate("Bearer good-token")

    def test_rejected_token_is_unauthorized(self):
        verifier = SupabaseIdentityVerifier(supabase_client(error=AuthApiError("invalid JWT", 401, "bad_jwt")))

        self.assertIsNone(verifier.verify("expired"))
        with self.assertRaises(Unauthorized):
            verifier.authenticate("Bearer expired")

    def test_unreachable_provider_is_upstream_error(self):
        errors = [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            AuthRetryableError("service unavailable", 503),
            AuthApiError("internal error", 500, None),
        ]
        for error in errors:
            with self.subTest(error=error):
                verifier = SupabaseIdentityVerifier(supabase_client(error=error))
                with self.assertRaises(UpstreamError):
                    verifier.authenticate("Bearer good-token")


class TestAuthRoutes(unittest.TestCase):
    def setUp(self):
        app.dependency_overrides[get_profile_repository] = lambda: FakeProfileRepository()
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides = {}

    def use_client(self, client: mock.MagicMock) -> None:
        app.dependency_overrides[get_identity_verifier] = lambda: SupabaseIdentityVerifier(client)

    def test_auth_outage_returns_bad_gateway(self):
        self.use_client(supabase_client(error=httpx.ConnectError("connection refused")))

        response = self.client.get("/v1/profile/me", headers={"Authorization": "Bearer good-token"})

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {"error": "upstream_error", "detail": "Identity provider unavailable"})

    def test_unknown_token_returns_unauthorized(self):
        self.use_client(supabase_client(user=None))

        response = self.client.get("/v1/profile/me", headers={"Authorization": "Bearer stale-token"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "unauthorized")


if __name__ == "__main__":
    unittest.main()
