"""HTTP 보안 미들웨어와 토큰 인증."""

from __future__ import annotations

import math
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.responses import Response

from ..config.settings import AppSettings
from ..errors import AuthenticationError

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

RATE_LIMIT_EXEMPT_PATHS = frozenset({"/health"})


class TokenBucket:
    """토큰 버킷 방식의 요청 제한기.

    초당 ``rate_per_second`` 개의 토큰이 ``capacity`` 까지 쌓이고, 요청마다
    토큰을 소비한다. 시계는 테스트를 위해 주입할 수 있다.
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second 는 양수여야 합니다.")
        if capacity < 1:
            raise ValueError("capacity 는 1 이상이어야 합니다.")
        self.rate = rate_per_second
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._last_update = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._last_update = now

    def consume(self, tokens: int = 1) -> bool:
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    def wait_time(self, tokens: int = 1) -> float:
        """``tokens`` 개를 쓸 수 있을 때까지 기다려야 하는 시간(초)."""

        available = self.available_tokens()
        if available >= tokens:
            return 0.0
        return (tokens - available) / self.rate


class RateLimitMiddleware(BaseHTTPMiddleware):
    """클라이언트 IP 별 토큰 버킷으로 요청 수를 제한한다."""

    def __init__(
        self,
        app: Any,
        *,
        rate_per_second: float,
        burst: int,
        max_clients: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(app)
        if max_clients < 1:
            raise ValueError("max_clients 는 1 이상이어야 합니다.")
        self._rate = rate_per_second
        self._burst = burst
        self._max_clients = max_clients
        self._clock = clock
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()

    @property
    def tracked_clients(self) -> int:
        return len(self._buckets)

    def _bucket(self, client_id: str) -> TokenBucket:
        bucket = self._buckets.get(client_id)
        if bucket is not None:
            self._buckets.move_to_end(client_id)
            return bucket
        if len(self._buckets) >= self._max_clients:
            self._evict()
        bucket = TokenBucket(self._rate, self._burst, self._clock)
        self._buckets[client_id] = bucket
        return bucket

    def _evict(self) -> None:
        # 가득 찬 버킷은 새 버킷과 상태가 같다.
        idle = [key for key, bucket in self._buckets.items() if bucket.available_tokens() >= bucket.capacity]
        for client_id in idle:
            del self._buckets[client_id]
        while len(self._buckets) >= self._max_clients:
            self._buckets.popitem(last=False)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)
        client_id = request.client.host if request.client else "anonymous"
        bucket = self._bucket(client_id)
        if not bucket.consume():
            retry_after = max(1, math.ceil(bucket.wait_time()))
            logger.warning("요청 제한 초과: {} {}", client_id, request.url.path)
            return JSONResponse(
                {"detail": "요청이 너무 많습니다."},
                status_code=429,
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


def install_security(app: FastAPI, settings: AppSettings) -> None:
    """보안 미들웨어를 설치한다. 마지막에 추가한 미들웨어가 가장 바깥에서 실행된다."""

    app.add_middleware(
        RateLimitMiddleware,
        rate_per_second=settings.rate_limit_per_second,
        burst=settings.rate_limit_burst,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(settings.trusted_hosts))


class TokenAuthority:
    """JWT 액세스 토큰 발급과 검증."""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 3600) -> None:
        if not secret:
            raise ValueError("JWT 서명 키가 필요합니다.")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = timedelta(seconds=ttl_seconds)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, subject: str, *, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        claims = {"sub": subject, "iat": issued_at, "exp": issued_at + self._ttl}
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("토큰이 없습니다.")
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm], options={"require": ["exp", "sub"]})
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("토큰이 만료되었습니다.") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("유효하지 않은 토큰입니다.") from exc


def build_authority(settings: AppSettings) -> Optional[TokenAuthority]:
    if not settings.jwt_secret:
        return None
    return TokenAuthority(
        settings.jwt_secret,
        settings.jwt_algorithm,
        settings.jwt_ttl_seconds,
    )


def require_auth(request: Request) -> Optional[Dict[str, Any]]:
    """``Authorization: Bearer`` 헤더를 검증하는 의존성. 서명 키가 없으면 통과시킨다."""

    authority: Optional[TokenAuthority] = getattr(request.app.state, "token_authority", None)
    if authority is None:
        return None
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Bearer 토큰이 필요합니다.")
    return authority.verify(token.strip())


__all__ = [
    "RateLimitMiddleware",
    "SECURITY_HEADERS",
    "SecurityHeadersMiddleware",
    "TokenAuthority",
    "TokenBucket",
    "build_authority",
    "install_security",
    "require_auth",
]
