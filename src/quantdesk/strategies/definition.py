"""사용자 정의 전략 선언 모델."""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SERIES_NAMES = frozenset({"open", "high", "low", "close", "volume"})
POSITION_NAMES = frozenset({"position_price"})
FUNCTION_NAMES = frozenset(
    {"sma", "ema", "rsi", "highest", "lowest", "prev", "crossover", "crossunder", "abs", "min", "max"}
)
RESERVED_NAMES = SERIES_NAMES | POSITION_NAMES | FUNCTION_NAMES | frozenset({"True", "False"})


class StrategyDefinition(BaseModel):
    """진입/청산 규칙 식과 손절/익절 비율로 구성된 전략."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(pattern=r"^[a-z0-9_-]{1,64}$", description="전략 식별자")
    name: str = Field(min_length=1, max_length=120)
    entry: str = Field(min_length=1, max_length=1000, description="진입 조건 식")
    exit: Optional[str] = Field(default=None, max_length=1000, description="청산 조건 식")
    stop_loss_pct: Optional[Decimal] = Field(default=None, gt=Decimal("0"), lt=Decimal("1"))
    take_profit_pct: Optional[Decimal] = Field(default=None, gt=Decimal("0"), lt=Decimal("1"))
    min_bars: int = Field(default=1, ge=1, le=10_000)
    parameters: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("parameters")
    @classmethod
    def _check_parameter_names(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for key in value:
            if not key.isidentifier():
                raise ValueError(f"파라미터 이름이 올바르지 않습니다: {key}")
            if key in RESERVED_NAMES:
                raise ValueError(f"예약어는 파라미터 이름으로 쓸 수 없습니다: {key}")
        return value

    @field_validator("exit")
    @classmethod
    def _blank_exit_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    def canonical(self) -> Dict[str, Any]:
        """의미가 같은 정의는 같은 결과를 내는 정규화된 표현."""

        def _number(value: Optional[Decimal]) -> Optional[str]:
            if value is None:
                return None
            return format(value.normalize(), "f")

        def _expression(value: Optional[str]) -> Optional[str]:
            return " ".join(value.split()) if value else None

        return {
            "id": self.id,
            "name": self.name,
            "entry": _expression(self.entry),
            "exit": _expression(self.exit),
            "stop_loss_pct": _number(self.stop_loss_pct),
            "take_profit_pct": _number(self.take_profit_pct),
            "min_bars": self.min_bars,
            "parameters": {key: _number(val) for key, val in sorted(self.parameters.items())},
        }


def fingerprint(definition: StrategyDefinition) -> str:
    """정규화된 정의의 SHA-256 지문."""

    encoded = json.dumps(definition.canonical(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


__all__ = [
    "FUNCTION_NAMES",
    "POSITION_NAMES",
    "RESERVED_NAMES",
    "SERIES_NAMES",
    "StrategyDefinition",
    "fingerprint",
]
