"""
Tests for the HTTP response caching middleware.
"""

from collections import Counter
from unittest.mock import MagicMock

import pytest
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient

from service_api.app.caching.cache_manager import CacheManager
from service_api.app.caching.middleware import (
    build_cache_key,
    cache_api_response,
    cache_content_response,
    cache_learning_path_response,
    cache_user_api_response,
    cached_route,
    get_request_user_id,
    invalidate_cache,
    set_browser_cache,
)
from service_api.app.domain.auth import ApiKeyAuthenticator, ApiKeyAuthMiddleware


API_KEYS = {
    "key-alice": {"user_id": "alice", "roles": ["user"]},
    "key-bob": {"user_id": "bob", "roles": ["user"]},
}


def create_test_app(*middlewares, api_keys=None):
    """Small application whose routes count handler invocations."""
    calls = Counter()
    app = FastAPI()
    router = APIRouter(route_class=cached_route(*middlewares))

    @router.get("/api/widgets")
    async def list_widgets():
        calls["widgets"] += 1
        return {"id": 1}

    @router.post("/api/widgets")
    async def create_widget():
        calls["create"] += 1
        return {"created": True}

    @router.get("/api/search")
    async def search(q: str = "", page: int = 1):
        calls["search"] += 1
        return {"q": q, "page": page}

    @router.get("/api/profile")
    async def profile(request: Request):
        calls["profile"] += 1
        return {"user": get_request_user_id(request)}

    @router.get("/api/broken")
    async def broken():
        calls["broken"] += 1
        return JSONResponse({"error": "database unavailable"}, status_code=500)

    @router.get("/api/missing")
    async def missing():
        calls["missing"] += 1
        raise HTTPException(status_code=404, detail="Not found")

    @router.get("/api/notes")
    async def notes():
        calls["notes"] += 1
        return PlainTextResponse("plain text")

    app.include_router(router)
    if api_keys:
        app.add_middleware(ApiKeyAuthMiddleware, authenticator=ApiKeyAuthenticator(api_keys))
    return app, calls


def make_request(path: str, query_string: bytes = b"", method: str = "GET") -> Request:
    return Request({
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string,
        "headers": [],
    })


class TestBuildCacheKey:
    """Test cases for cache key derivation."""

    def test_path_only(self):
        assert build_cache_key(make_request("/api/widgets")) == "GET:/api/widgets"

    def test_query_parameters_are_sorted(self):
        first = build_cache_key(make_request("/api/search", b"q=yoga&page=2"))
        second = build_cache_key(make_request("/api/search", b"page=2&q=yoga"))

        assert first == second == "GET:/api/search?page=2&q=yoga"

    def test_repeated_parameters_are_kept(self):
        key = build_cache_key(make_request("/api/search", b"tag=b&tag=a"))

        assert key == "GET:/api/search?tag=a&tag=b"

    def test_user_prefix(self):
        key = build_cache_key(make_request("/api/profile"), user_id="alice")

        assert key == "user:alice:GET:/api/profile"

    def test_method_is_part_of_key(self):
        assert build_cache_key(make_request("/api/widgets", method="head")) == "HEAD:/api/widgets"


class TestCacheApiResponse:
    """Test cases for shared response caching."""

    @pytest.fixture
    def manager(self, clock):
        return CacheManager(clock=clock)

    def test_miss_then_hit(self, manager):
        """Test that the second identical request is served from cache."""
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        first = client.get("/api/widgets")
        second = client.get("/api/widgets")

        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert first.json() == {"id": 1}
        assert second.status_code == 200
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == {"id": 1}
        assert calls["widgets"] == 1

    def test_query_order_does_not_matter(self, manager):
        """Test that reordered query parameters hit the same entry."""
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        client.get("/api/search?q=yoga&page=2")
        response = client.get("/api/search?page=2&q=yoga")

        assert response.headers["X-Cache"] == "HIT"
        assert response.json() == {"q": "yoga", "page": 2}
        assert calls["search"] == 1

    def test_different_query_is_a_different_entry(self, manager):
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        client.get("/api/search?q=yoga")
        response = client.get("/api/search?q=budget")

        assert response.headers["X-Cache"] == "MISS"
        assert calls["search"] == 2

    def test_bypass_header_skips_cache(self, manager):
        """Test that the bypass header neither reads nor writes the cache."""
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        bypassed = client.get("/api/widgets", headers={"X-Bypass-Cache": "true"})
        normal = client.get("/api/widgets")

        assert "X-Cache" not in bypassed.headers
        assert normal.headers["X-Cache"] == "MISS"
        assert calls["widgets"] == 2

    def test_custom_bypass_header(self, manager):
        app, calls = create_test_app(cache_api_response(manager, bypass_header="X-No-Cache"))
        client = TestClient(app)

        client.get("/api/widgets")
        response = client.get("/api/widgets", headers={"X-No-Cache": "1"})

        assert "X-Cache" not in response.headers
        assert calls["widgets"] == 2

    def test_post_is_not_cached(self, manager):
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        client.post("/api/widgets")
        response = client.post("/api/widgets")

        assert "X-Cache" not in response.headers
        assert calls["create"] == 2

    def test_error_status_is_not_stored(self, manager):
        """Test that 5xx responses are passed through without caching."""
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        first = client.get("/api/broken")
        second = client.get("/api/broken")

        assert first.status_code == second.status_code == 500
        assert second.headers["X-Cache"] == "MISS"
        assert calls["broken"] == 2
        assert manager.get("default", "GET:/api/broken") is None

    def test_handler_exception_is_not_cached(self, manager):
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        client.get("/api/missing")
        response = client.get("/api/missing")

        assert response.status_code == 404
        assert calls["missing"] == 2
        assert manager.get_stats()["operations"]["sets"] == 0

    def test_non_json_response_is_not_stored(self, manager):
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        client.get("/api/notes")
        response = client.get("/api/notes")

        assert response.text == "plain text"
        assert calls["notes"] == 2

    def test_lookup_failure_serves_uncached(self):
        """Test that cache faults fail open to the handler."""
        manager = MagicMock(spec=CacheManager)
        manager.get.side_effect = RuntimeError("cache unavailable")
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        response = client.get("/api/widgets")

        assert response.status_code == 200
        assert response.json() == {"id": 1}
        assert "X-Cache" not in response.headers
        manager.set.assert_not_called()
        assert calls["widgets"] == 1

    def test_store_failure_still_returns_response(self):
        manager = MagicMock(spec=CacheManager)
        manager.get.side_effect = lambda namespace, key, default=None: default
        manager.set.side_effect = RuntimeError("cache full")
        app, _ = create_test_app(cache_api_response(manager))
        client = TestClient(app)

        response = client.get("/api/widgets")

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert response.json() == {"id": 1}

    def test_entries_expire_after_ttl(self, manager, clock):
        app, calls = create_test_app(cache_api_response(manager, ttl=30))
        client = TestClient(app)

        client.get("/api/widgets")
        clock.advance(31)
        response = client.get("/api/widgets")

        assert response.headers["X-Cache"] == "MISS"
        assert calls["widgets"] == 2

    def test_invalidate_cache_after_write(self, manager):
        """Test that explicit invalidation forces the next read to miss."""
        app, calls = create_test_app(cache_api_response(manager))
        client = TestClient(app)
        client.get("/api/widgets")

        assert invalidate_cache(manager, "default", "GET:/api/widgets") is True
        response = client.get("/api/widgets")

        assert response.headers["X-Cache"] == "MISS"
        assert calls["widgets"] == 2

    def test_invalidate_missing_key(self, manager):
        assert invalidate_cache(manager, "default", "GET:/api/unknown") is False

    def test_invalidate_cache_swallows_errors(self):
        manager = MagicMock(spec=CacheManager)
        manager.delete.side_effect = RuntimeError("cache unavailable")

        assert invalidate_cache(manager, "default", "GET:/api/widgets") is False

    def test_app_wide_middleware(self, manager):
        """Test installing the cache for the whole application."""
        calls = Counter()
        app = FastAPI()
        app.middleware("http")(cache_api_response(manager))

        @app.get("/api/widgets")
        async def list_widgets():
            calls["widgets"] += 1
            return {"id": 1}

        client = TestClient(app)
        first = client.get("/api/widgets")
        second = client.get("/api/widgets")

        assert first.headers["X-Cache"] == "MISS"
        assert first.json() == {"id": 1}
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == {"id": 1}
        assert calls["widgets"] == 1

    def test_app_wide_miss_keeps_repeated_headers(self, manager):
        """Test that a rebuilt miss response keeps every Set-Cookie header."""
        app = FastAPI()
        app.middleware("http")(cache_api_response(manager))

        @app.get("/api/session")
        async def session(response: Response):
            response.set_cookie("a", "1")
            response.set_cookie("b", "2")
            return {"ok": True}

        client = TestClient(app)
        response = client.get("/api/session")

        assert response.headers["X-Cache"] == "MISS"
        cookies = response.headers.get_list("set-cookie")
        assert len(cookies) == 2
        assert cookies[0].startswith("a=1")
        assert cookies[1].startswith("b=2")
        assert response.json() == {"ok": True}


class TestUserScopedCaching:
    """Test cases for per-user response caching."""

    @pytest.fixture
    def manager(self, clock):
        return CacheManager(clock=clock)

    @pytest.fixture
    def client_and_calls(self, manager):
        app, calls = create_test_app(cache_user_api_response(manager), api_keys=API_KEYS)
        return TestClient(app), calls

    def test_users_do_not_share_entries(self, client_and_calls):
        """Test that one user's cached response is never served to another."""
        client, calls = client_and_calls

        alice = client.get("/api/profile", headers={"X-API-Key": "key-alice"})
        bob = client.get("/api/profile", headers={"X-API-Key": "key-bob"})
        alice_again = client.get("/api/profile", headers={"X-API-Key": "key-alice"})

        assert alice.json() == {"user": "alice"}
        assert bob.headers["X-Cache"] == "MISS"
        assert bob.json() == {"user": "bob"}
        assert alice_again.headers["X-Cache"] == "HIT"
        assert alice_again.json() == {"user": "alice"}
        assert calls["profile"] == 2

    def test_entries_are_stored_under_user_namespace(self, client_and_calls, manager):
        client, _ = client_and_calls

        client.get("/api/profile", headers={"X-API-Key": "key-alice"})

        assert manager.get("user", "user:alice:GET:/api/profile") == {"user": "alice"}

    def test_anonymous_requests_are_not_cached(self, client_and_calls, manager):
        client, calls = client_and_calls

        client.get("/api/profile")
        response = client.get("/api/profile")

        assert "X-Cache" not in response.headers
        assert response.json() == {"user": None}
        assert calls["profile"] == 2
        assert manager.get_stats()["namespaces"]["user"]["keys"] == 0

    def test_invalid_key_is_treated_as_anonymous(self, client_and_calls):
        client, calls = client_and_calls

        response = client.get("/api/profile", headers={"X-API-Key": "not-a-key"})

        assert response.status_code == 200
        assert "X-Cache" not in response.headers
        assert calls["profile"] == 1

    def test_user_entries_use_short_ttl(self, client_and_calls, clock):
        client, calls = client_and_calls
        headers = {"X-API-Key": "key-bob"}

        client.get("/api/profile", headers=headers)
        clock.advance(61)
        response = client.get("/api/profile", headers=headers)

        assert response.headers["X-Cache"] == "MISS"
        assert calls["profile"] == 2


class TestSpecializedCaches:
    """Test cases for learning-path and content caching presets."""

    @pytest.fixture
    def manager(self, clock):
        return CacheManager(clock=clock)

    def test_learning_path_uses_api_namespace(self, manager, clock):
        app, _ = create_test_app(cache_learning_path_response(manager))
        client = TestClient(app)

        client.get("/api/widgets")

        assert manager.get("api", "GET:/api/widgets") == {"id": 1}
        assert manager.get("default", "GET:/api/widgets") is None

        clock.advance(601)
        assert manager.get("api", "GET:/api/widgets") is None

    def test_content_cache_lives_for_an_hour(self, manager, clock):
        """Test that content responses expire after the content TTL."""
        app, calls = create_test_app(cache_content_response(manager))
        client = TestClient(app)

        client.get("/api/widgets")
        clock.advance(3599)
        within = client.get("/api/widgets")
        clock.advance(2)
        after = client.get("/api/widgets")

        assert within.headers["X-Cache"] == "HIT"
        assert after.headers["X-Cache"] == "MISS"
        assert calls["widgets"] == 2
        assert manager.get("content", "GET:/api/widgets") == {"id": 1}


class TestBrowserCache:
    """Test cases for client-side cache headers."""

    def test_sets_cache_headers(self):
        app, _ = create_test_app(set_browser_cache(86400, clock=lambda: 0))
        client = TestClient(app)

        response = client.get("/api/widgets")

        assert response.headers["Cache-Control"] == "public, max-age=86400"
        assert response.headers["Expires"] == "Fri, 02 Jan 1970 00:00:00 GMT"
        assert "X-Cache" not in response.headers

    def test_headers_added_to_cached_responses(self, clock):
        manager = CacheManager(clock=clock)
        app, calls = create_test_app(
            set_browser_cache(300, clock=lambda: 0),
            cache_api_response(manager),
        )
        client = TestClient(app)

        client.get("/api/widgets")
        response = client.get("/api/widgets")

        assert response.headers["X-Cache"] == "HIT"
        assert response.headers["Cache-Control"] == "public, max-age=300"
        assert calls["widgets"] == 1
