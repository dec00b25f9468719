from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from quantdesk.api.security import (
    SECURITY_HEADERS,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    TokenAuthority,
    TokenBucket,
    build_authority,
    require_auth,
)
from quantdesk.config.settings import AppSettings
from quantdesk.errors import AuthenticationError


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_token_bucket_refills_over_time() -> None:
    clock = FakeClock()
    bucket = TokenBucket(rate_per_second=2, capacity=3, clock=clock)

    assert all(bucket.consume() for _ in range(3))
    assert not bucket.consume()
    assert bucket.wait_time() == pytest.approx(0.5)

    clock.now += 0.5
    assert bucket.consume()
    clock.now += 60
    assert bucket.available_tokens() == pytest.approx(3)


@pytest.mark.parametrize(("rate", "capacity"), [(0, 1), (1, 0)])
def test_token_bucket_rejects_invalid_configuration(rate: float, capacity: int) -> None:
    with pytest.raises(ValueError):
        TokenBucket(rate, capacity)


def build_app(clock: FakeClock, authority: Optional[TokenAuthority] = None) -> FastAPI:
    app = FastAPI()
    app.state.token_authority = authority
    app.add_middleware(RateLimitMiddleware, rate_per_second=1, burst=2, clock=clock)
    app.add_middleware(SecurityHeadersMiddleware)

    @app.exception_handler(AuthenticationError)
    async def _unauthorized(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=401)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/private")
    async def private(claims: Optional[Dict[str, Any]] = Depends(require_auth)) -> Dict[str, Any]:
        return {"subject": claims["sub"] if claims else None}

    return app


def test_rate_limit_returns_429_with_retry_after() -> None:
    clock = FakeClock()
    client = TestClient(build_app(clock))

    assert client.get("/private").status_code == 200
    assert client.get("/private").status_code == 200
    limited = client.get("/private")

    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "1"
    assert limited.json() == {"detail": "요청이 너무 많습니다."}
    assert client.get("/health").status_code == 200

    clock.now += 1
    assert client.get("/private").status_code == 200


def test_rate_limit_keeps_bucket_map_bounded() -> None:
    clock = FakeClock()
    limiter = RateLimitMiddleware(FastAPI(), rate_per_second=1, burst=2, max_clients=2, clock=clock)

    exhausted = limiter._bucket("10.0.0.1")
    assert exhausted.consume() and exhausted.consume()
    limiter._bucket("10.0.0.2")
    limiter._bucket("10.0.0.3")

    # 가득 찬 10.0.0.2 가 먼저 정리되고 소진된 버킷은 남는다
    assert limiter.tracked_clients == 2
    assert limiter._bucket("10.0.0.1") is exhausted
    assert not exhausted.consume()

    for idx in range(100):
        limiter._bucket(f"192.168.0.{idx}")
    assert limiter.tracked_clients == 2


def test_rate_limit_rejects_invalid_client_cap() -> None:
    with pytest.raises(ValueError):
        RateLimitMiddleware(FastAPI(), rate_per_second=1, burst=2, max_clients=0)


def test_security_headers_are_added() -> None:
    client = TestClient(build_app(FakeClock()))

    response = client.get("/health")

    for name, value in SECURITY_HEADERS.items():
        assert response.headers[name] == value


def test_issue_and_verify_token() -> None:
    authority = TokenAuthority("secret", ttl_seconds=60)

    claims = authority.verify(authority.issue("api"))

    assert claims["sub"] == "api"
    assert claims["exp"] - claims["iat"] == 60
    assert authority.ttl_seconds == 60


@pytest.mark.parametrize(
    ("token_factory", "message"),
    [
        (lambda authority: "", "토큰이 없습니다."),
        (
            lambda authority: authority.issue("api", now=datetime.now(timezone.utc) - timedelta(hours=2)),
            "토큰이 만료되었습니다.",
        ),
        (lambda authority: TokenAuthority("other-secret").issue("api"), "유효하지 않은 토큰입니다."),
        (
            lambda authority: jwt.encode(
                {"exp": datetime.now(timezone.utc) + timedelta(minutes=5)}, "secret", algorithm="HS256"
            ),
            "유효하지 않은 토큰입니다.",
        ),
    ],
)
def test_verify_rejects_bad_tokens(token_factory, message: str) -> None:
    authority = TokenAuthority("secret")

    with pytest.raises(AuthenticationError) as exc_info:
        authority.verify(token_factory(authority))

    assert str(exc_info.value) == message


def test_require_auth_checks_bearer_header() -> None:
    authority = TokenAuthority("secret")
    client = TestClient(build_app(FakeClock(), authority))
    token = authority.issue("api")

    assert client.get("/private").status_code == 401
    assert client.get("/private", headers={"Authorization": "Basic abc"}).status_code == 401
    response = client.get("/private", headers={"Authorization": f"Bearer {token}"})
    assert response.json() == {"subject": "api"}


def test_require_auth_passes_when_disabled() -> None:
    client = TestClient(build_app(FakeClock()))

    assert client.get("/private").json() == {"subject": None}


def test_build_authority_requires_secret() -> None:
    assert build_authority(AppSettings(jwt_secret=None)) is None
    authority = build_authority(AppSettings(jwt_secret="s3cret", jwt_ttl_seconds=120))
    assert authority is not None
    assert authority.ttl_seconds == 120
