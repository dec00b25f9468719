"""프로젝트 공통 예외."""

from __future__ import annotations

from typing import Optional


class QuantDeskError(RuntimeError):
    """모든 도메인 예외의 기반 클래스."""


class StrategyCompileError(QuantDeskError):
    """전략 식을 해석하거나 검증하지 못했을 때 발생."""

    def __init__(self, message: str, expression: Optional[str] = None) -> None:
        self.message = message
        self.expression = expression
        detail = f"{message} (식: {expression})" if expression else message
        super().__init__(f"전략 컴파일 오류: {detail}")


class StrategyNotFoundError(QuantDeskError):
    """저장소에 요청한 전략이 없을 때 발생."""

    def __init__(self, strategy_id: str) -> None:
        self.strategy_id = strategy_id
        super().__init__(f"전략을 찾을 수 없습니다: {strategy_id}")


class BrokerAPIError(QuantDeskError):
    """브로커 API 오류 응답."""

    def __init__(self, status: str, message: Optional[str] = None) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Broker API 오류[{status}]: {message or '알 수 없는 오류'}")


class BrokerCredentialsError(QuantDeskError):
    """API 키가 필요한 호출에 인증 정보가 없을 때 발생."""

    def __init__(self) -> None:
        super().__init__("브로커 API Key와 Secret이 설정되어야 합니다.")


class AuthenticationError(QuantDeskError):
    """API 토큰 검증 실패."""


__all__ = [
    "AuthenticationError",
    "BrokerAPIError",
    "BrokerCredentialsError",
    "QuantDeskError",
    "StrategyCompileError",
    "StrategyNotFoundError",
]
