"""Decimal 시계열 기술적 지표.

모든 함수는 데이터가 창 크기보다 짧으면 ``None`` 을 돌려준다.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def _check_window(period: int) -> None:
    if period < 1:
        raise ValueError("기간은 1 이상이어야 합니다.")


def sma(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    """단순 이동평균."""

    _check_window(period)
    if len(values) < period:
        return None
    window = values[-period:]
    return sum(window, _ZERO) / Decimal(period)


def ema(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    """지수 이동평균. 첫 ``period`` 개의 SMA 로 시작한다."""

    _check_window(period)
    if len(values) < period:
        return None
    alpha = Decimal(2) / Decimal(period + 1)
    current = sum(values[:period], _ZERO) / Decimal(period)
    for value in values[period:]:
        current = alpha * value + (Decimal(1) - alpha) * current
    return current


def rsi(values: Sequence[Decimal], period: int = 14) -> Optional[Decimal]:
    """Wilder 평활화를 사용하는 RSI."""

    _check_window(period)
    if len(values) < period + 1:
        return None
    gains = []
    losses = []
    for previous, current in zip(values[:-1], values[1:]):
        change = current - previous
        gains.append(change if change > _ZERO else _ZERO)
        losses.append(-change if change < _ZERO else _ZERO)
    avg_gain = sum(gains[:period], _ZERO) / Decimal(period)
    avg_loss = sum(losses[:period], _ZERO) / Decimal(period)
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / Decimal(period)
        avg_loss = (avg_loss * (period - 1) + loss) / Decimal(period)
    if avg_loss == _ZERO:
        if avg_gain == _ZERO:
            return Decimal("50")
        return _HUNDRED
    rs = avg_gain / avg_loss
    return _HUNDRED - _HUNDRED / (Decimal(1) + rs)


def highest(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    _check_window(period)
    if len(values) < period:
        return None
    return max(values[-period:])


def lowest(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    _check_window(period)
    if len(values) < period:
        return None
    return min(values[-period:])


__all__ = ["ema", "highest", "lowest", "rsi", "sma"]
