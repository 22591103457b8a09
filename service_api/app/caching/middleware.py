"""
HTTP response caching middleware.

Each factory returns a Starlette-style middleware function
``async (request, call_next) -> Response``. A function can be installed for
the whole application with ``app.middleware("http")(fn)`` or scoped to a
router with ``APIRouter(route_class=cached_route(fn))``. In both cases the
middleware receives the handler's ``Response``, stores its JSON body on a
miss and returns it to the client.
"""

import json
import time
from email.utils import formatdate
from urllib.parse import urlencode
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple, Type, TYPE_CHECKING

from fastapi.routing import APIRoute
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from shared.logging import get_logger
from .namespaces import CacheNamespace

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .cache_manager import CacheManager, NamespaceName


CallNext = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, CallNext], Awaitable[Response]]

CACHE_STATUS_HEADER = "X-Cache"
DEFAULT_BYPASS_HEADER = "X-Bypass-Cache"

DEFAULT_API_TTL = 300
DEFAULT_USER_TTL = 60
DEFAULT_LEARNING_PATH_TTL = 600
DEFAULT_CONTENT_TTL = 3600

_MISSING = object()

logger = get_logger("api.cache_middleware")


def build_cache_key(request: Request, user_id: Optional[str] = None) -> str:
    """``<METHOD>:<path>[?<sorted query>]``, prefixed with ``user:<id>:`` when user-scoped."""
    key = f"{request.method.upper()}:{request.url.path}"
    params = sorted(request.query_params.multi_items())
    if params:
        key = f"{key}?{urlencode(params)}"
    if user_id is not None:
        key = f"user:{user_id}:{key}"
    return key


def get_request_user_id(request: Request) -> Optional[str]:
    """User id placed on ``request.state.user_info`` by the authentication layer."""
    user_info = getattr(request.state, "user_info", None)
    if not isinstance(user_info, dict):
        return None
    user_id = user_info.get("user_id")
    return str(user_id) if user_id is not None else None


def _is_json(response: Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == "application/json"


async def _read_body(response: Response) -> Tuple[bytes, Response]:
    """Return the body and a response that can still be sent to the client."""
    body = getattr(response, "body", None)
    if body is not None:
        return body, response

    # Streaming responses (app-wide middleware) can only be read once
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
    body = b"".join(chunks)
    rebuilt = Response(content=body, status_code=response.status_code, background=response.background)
    # Raw list keeps repeated headers such as Set-Cookie
    rebuilt.raw_headers = list(response.raw_headers)
    return body, rebuilt


def _response_cache(
    cache_manager: "CacheManager",
    *,
    ttl: float,
    namespace: "NamespaceName",
    bypass_header: str,
    methods: Iterable[str],
    user_scoped: bool,
) -> Middleware:
    allowed_methods = {method.upper() for method in methods}

    async def middleware(request: Request, call_next: CallNext) -> Response:
        if request.method.upper() not in allowed_methods:
            return await call_next(request)

        if request.headers.get(bypass_header):
            return await call_next(request)

        user_id = None
        if user_scoped:
            user_id = get_request_user_id(request)
            if user_id is None:
                return await call_next(request)

        try:
            cache_key = build_cache_key(request, user_id)
            cached = cache_manager.get(namespace, cache_key, _MISSING)
        except Exception as exc:
            logger.warning("Cache lookup failed, serving uncached", path=request.url.path, error=str(exc))
            return await call_next(request)

        if cached is not _MISSING:
            return JSONResponse(content=cached, headers={CACHE_STATUS_HEADER: "HIT"})

        response = await call_next(request)
        response.headers[CACHE_STATUS_HEADER] = "MISS"

        if not 200 <= response.status_code < 400 or not _is_json(response):
            return response

        body, response = await _read_body(response)
        try:
            cache_manager.set(namespace, cache_key, json.loads(body), ttl)
        except Exception as exc:
            logger.warning("Failed to store response in cache", key=cache_key, error=str(exc))
        return response

    return middleware


def cache_api_response(
    cache_manager: "CacheManager",
    *,
    ttl: float = DEFAULT_API_TTL,
    namespace: "NamespaceName" = CacheNamespace.DEFAULT,
    bypass_header: str = DEFAULT_BYPASS_HEADER,
    methods: Iterable[str] = ("GET",),
) -> Middleware:
    """Cache JSON responses of idempotent requests keyed by method, path and query."""
    return _response_cache(
        cache_manager,
        ttl=ttl,
        namespace=namespace,
        bypass_header=bypass_header,
        methods=methods,
        user_scoped=False,
    )


def cache_user_api_response(
    cache_manager: "CacheManager",
    *,
    ttl: float = DEFAULT_USER_TTL,
    namespace: "NamespaceName" = CacheNamespace.USER,
    bypass_header: str = DEFAULT_BYPASS_HEADER,
    methods: Iterable[str] = ("GET",),
) -> Middleware:
    """Like ``cache_api_response`` but keyed per authenticated user.

    Anonymous requests are passed straight through and never cached.
    """
    return _response_cache(
        cache_manager,
        ttl=ttl,
        namespace=namespace,
        bypass_header=bypass_header,
        methods=methods,
        user_scoped=True,
    )


def cache_learning_path_response(
    cache_manager: "CacheManager",
    *,
    ttl: float = DEFAULT_LEARNING_PATH_TTL,
    namespace: "NamespaceName" = CacheNamespace.API,
    **options: Any,
) -> Middleware:
    return cache_api_response(cache_manager, ttl=ttl, namespace=namespace, **options)


def cache_content_response(
    cache_manager: "CacheManager",
    *,
    ttl: float = DEFAULT_CONTENT_TTL,
    namespace: "NamespaceName" = CacheNamespace.CONTENT,
    **options: Any,
) -> Middleware:
    return cache_api_response(cache_manager, ttl=ttl, namespace=namespace, **options)


def set_browser_cache(max_age_seconds: int, *, clock: Callable[[], float] = time.time) -> Middleware:
    """Add ``Cache-Control`` and ``Expires`` headers; no server-side caching."""

    async def middleware(request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)
        response.headers["Cache-Control"] = f"public, max-age={max_age_seconds}"
        response.headers["Expires"] = formatdate(clock() + max_age_seconds, usegmt=True)
        return response

    return middleware


def invalidate_cache(cache_manager: "CacheManager", namespace: "NamespaceName", key: str) -> bool:
    """Evict a cached response after a write; returns whether an entry was removed."""
    try:
        return cache_manager.delete(namespace, key)
    except Exception as exc:
        logger.error("Cache invalidation failed", namespace=getattr(namespace, "value", namespace), key=key, error=str(exc))
        return False


def _chain(middleware: Middleware, call_next: CallNext) -> CallNext:
    async def handler(request: Request) -> Response:
        return await middleware(request, call_next)

    return handler


def cached_route(*middlewares: Middleware) -> Type[APIRoute]:
    """Build an ``APIRoute`` class that runs ``middlewares`` around each route handler.

    The first middleware is the outermost one.
    """

    class CachedRoute(APIRoute):
        def get_route_handler(self) -> CallNext:
            handler = super().get_route_handler()
            for middleware in reversed(middlewares):
                handler = _chain(middleware, handler)
            return handler

    return CachedRoute
