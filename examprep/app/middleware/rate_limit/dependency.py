"""FastAPI dependency applying a rate limit preset to a route.

Usage:
    @router.post("/auth/login", dependencies=[Depends(RateLimitDependency("auth"))])
    async def login(...):
        ...
"""

from typing import Awaitable, Callable, Optional, Union

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.exceptions import RateLimitExceededError
from examprep.app.middleware.rate_limit.limiter import (
    RateLimiter,
    get_rate_limit_headers,
)
from examprep.app.middleware.rate_limit.models import RateLimitConfig, RateLimitPresets

logger = get_logger(__name__)

# Resolves the authenticated user id for a request, or None for anonymous
UserIdResolver = Callable[[Request], Awaitable[Optional[str]]]


def get_client_ip(request: Request) -> str:
    """Client address from proxy headers, falling back to the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"


async def get_rate_limit_identifier(
    request: Request, user_id_resolver: Optional[UserIdResolver] = None
) -> str:
    """``user:<id>`` for authenticated requests, ``ip:<addr>`` otherwise."""
    if user_id_resolver is not None:
        user_id = await user_id_resolver(request)
        if user_id:
            return f"user:{user_id}"
    return f"ip:{get_client_ip(request)}"


class RateLimitDependency:
    """Route dependency enforcing one rate limit configuration.

    Denied checks raise ``RateLimitExceededError`` (rendered as 429 by the
    application's exception handler). Admitted checks add the rate limit
    headers to the outgoing response.

    The result is also kept on ``request.state.rate_limit_result``. Headers
    set here only reach the response FastAPI builds from the route's return
    value; ``RateLimitHeadersMiddleware`` copies them onto responses a route
    constructs itself.
    """

    def __init__(
        self,
        config: Union[str, RateLimitConfig] = "standard",
        user_id_resolver: Optional[UserIdResolver] = None,
    ):
        self.config = RateLimitPresets.get(config) if isinstance(config, str) else config
        self.user_id_resolver = user_id_resolver

    def _build_limiter(self, request: Request) -> RateLimiter:
        services = request.app.state.services
        config = self.config
        prefix = services.settings.rate_limit_key_prefix
        if config.key_prefix != prefix:
            config = RateLimitConfig(
                max_requests=config.max_requests,
                window_ms=config.window_ms,
                key_prefix=prefix,
            )
        return RateLimiter(
            services.rate_limit_backend,
            config,
            services.failure_policy,
        )

    async def __call__(self, request: Request, response: Response) -> None:
        identifier = await get_rate_limit_identifier(request, self.user_id_resolver)
        result = await self._build_limiter(request).check(identifier)

        if not result.success:
            logger.info(
                "Rate limit exceeded",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    identifier=identifier,
                    retry_after=result.retry_after,
                ),
            )
            raise RateLimitExceededError(result)

        request.state.rate_limit_result = result

        for name, value in get_rate_limit_headers(result).items():
            response.headers[name] = value


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Adds rate limit headers from ``request.state.rate_limit_result``.

    Covers routes that return their own ``Response`` object, which discards
    headers the dependency set on the injected response.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        result = getattr(request.state, "rate_limit_result", None)
        if result is not None:
            for name, value in get_rate_limit_headers(result).items():
                response.headers[name] = value
        return response
