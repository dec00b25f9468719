"""애플리케이션 설정 로더."""

from __future__ import annotations

from datetime import time
from decimal import Decimal
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import AnyUrl, Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """환경 변수 기반 프로젝트 설정."""

    model_config = SettingsConfigDict(
        env_prefix="QUANTDESK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: AnyUrl = Field(
        default="sqlite+aiosqlite:///./quantdesk.db",
        description="SQLAlchemy 호환 데이터베이스 URL",
    )
    redis_url: AnyUrl = Field(
        default="redis://localhost:6379/0",
        description="시세/알림 pub/sub 에 사용할 Redis URL",
    )
    redis_enabled: bool = Field(
        default=True,
        description="Redis pub/sub 사용 여부 (끄면 프로세스 내부 브로커 사용)",
    )
    jwt_secret: Optional[str] = Field(
        default=None,
        description="API 토큰 서명 비밀키 (없으면 인증 비활성화)",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="토큰 서명 알고리즘",
    )
    jwt_ttl_seconds: int = Field(
        default=3600,
        description="토큰 유효 시간(초)",
        ge=60,
    )
    api_access_key: Optional[str] = Field(
        default=None,
        description="토큰 발급 시 확인하는 접근 키",
    )
    broker_mode: Literal["paper", "live"] = Field(
        default="paper",
        description="주문 집행 모드",
    )
    broker_base_url: HttpUrl = Field(
        default="https://broker.example.com",
        description="브로커 REST API 기본 URL",
    )
    broker_ws_url: Optional[AnyUrl] = Field(
        default=None,
        description="브로커 시세 웹소켓 엔드포인트 (선택)",
    )
    broker_api_key: Optional[str] = Field(
        default=None,
        description="브로커 API Key",
    )
    broker_api_secret: Optional[str] = Field(
        default=None,
        description="브로커 API Secret",
    )
    http_timeout: float = Field(
        default=10.0,
        description="HTTP 요청 타임아웃(초)",
        ge=0.1,
    )
    paper_starting_cash: Decimal = Field(
        default=Decimal("100000"),
        description="페이퍼 트레이딩 시작 현금",
        ge=Decimal("0"),
    )
    paper_fee_rate: Decimal = Field(
        default=Decimal("0.001"),
        description="페이퍼 트레이딩 수수료율",
        ge=Decimal("0"),
        lt=Decimal("1"),
    )
    scheduler_timezone: str = Field(
        default="UTC",
        description="트레이딩/리포트 스케줄러에 사용할 타임존",
    )
    trading_symbol: str = Field(
        default="BTC_USD",
        description="자동매매를 수행할 심볼",
    )
    trading_strategy_id: str = Field(
        default="momentum_breakout",
        description="기동 시 활성화할 전략 ID",
    )
    trading_interval_seconds: int = Field(
        default=300,
        description="트레이딩 사이클 실행 간격(초)",
        ge=5,
    )
    candle_interval: str = Field(
        default="1m",
        description="전략 평가에 사용할 캔들 간격",
        pattern=r"^\d+[smhd]$",
    )
    candle_count: int = Field(
        default=120,
        description="전략 평가를 위한 캔들 조회 개수",
        ge=10,
    )
    strategy_cache_size: int = Field(
        default=128,
        description="컴파일된 전략 캐시 크기",
        ge=0,
    )
    slack_webhook_url: Optional[HttpUrl] = Field(
        default=None,
        description="Slack Webhook URL (선택)",
    )
    daily_report_time: time = Field(
        default=time(0, 5),
        description="일일 성과 리포트를 전송할 시각(HH:MM)",
    )
    market_channel_prefix: str = Field(
        default="market",
        description="시세 pub/sub 채널 접두사",
    )
    alert_channel: str = Field(
        default="alerts",
        description="알림 pub/sub 채널",
    )
    market_history_size: int = Field(
        default=500,
        description="심볼별로 메모리에 보관할 틱 개수",
        ge=1,
    )
    max_allocation_pct: Decimal = Field(
        default=Decimal("0.3"),
        description="단일 주문에 허용되는 최대 현금 비중",
        ge=Decimal("0"),
        le=Decimal("1"),
    )
    min_cash_reserve_pct: Decimal = Field(
        default=Decimal("0.1"),
        description="항상 남겨둘 최소 현금 비중",
        ge=Decimal("0"),
        lt=Decimal("1"),
    )
    min_order_value: Decimal = Field(
        default=Decimal("10"),
        description="주문 최소 금액",
        ge=Decimal("0"),
    )
    max_order_value: Optional[Decimal] = Field(
        default=None,
        description="주문 최대 금액 (없으면 무제한)",
        ge=Decimal("0"),
    )
    daily_loss_limit_pct: Decimal = Field(
        default=Decimal("0.05"),
        description="일일 손실 한도 비율",
        ge=Decimal("0"),
    )
    daily_loss_limit_value: Optional[Decimal] = Field(
        default=None,
        description="일일 손실 한도 금액",
    )
    max_consecutive_losses: int = Field(
        default=3,
        description="연속 손실 허용 횟수",
        ge=0,
    )
    order_retry_limit: int = Field(
        default=2,
        description="주문 실패 시 재시도 횟수",
        ge=0,
    )
    order_retry_delay: float = Field(
        default=1.5,
        description="주문 재시도 간 대기 시간(초)",
        ge=0.0,
    )
    cors_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="CORS 허용 오리진",
    )
    trusted_hosts: List[str] = Field(
        default_factory=lambda: ["*"],
        description="허용 Host 헤더",
    )
    rate_limit_per_second: float = Field(
        default=10.0,
        description="클라이언트별 초당 허용 요청 수",
        gt=0,
    )
    rate_limit_burst: int = Field(
        default=40,
        description="클라이언트별 순간 허용 요청 수",
        ge=1,
    )
    log_level: str = Field(
        default="INFO",
        description="로그 레벨",
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="FastAPI 서버 호스트",
    )
    api_port: int = Field(
        default=8000,
        description="FastAPI 서버 포트",
        ge=1,
        le=65535,
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """싱글턴 형태로 설정을 반환한다."""

    return AppSettings()


__all__ = ["AppSettings", "get_settings"]
