"""전략 조건식 컴파일러.

조건식은 파이썬 식 문법의 부분집합이다. ``ast`` 로 파싱한 뒤 허용된
노드만 클로저 트리로 변환하므로 ``eval`` 을 거치지 않는다.

- 시계열 이름(``open``, ``high``, ``low``, ``close``, ``volume``)은 최신 봉 값을 뜻한다.
- 지표 함수는 데이터가 모자라면 "준비되지 않음" 값을 돌려주고, 그 값이 포함된
  비교식은 거짓이 된다. 0 으로 나누는 경우도 같다.
"""

from __future__ import annotations

import ast
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, NamedTuple, NoReturn, Optional, Sequence

from ..data import Candle, Position, SignalAction, StrategySignal
from ..errors import StrategyCompileError
from ..services import indicators
from .base import TradingStrategy
from .definition import FUNCTION_NAMES, SERIES_NAMES, StrategyDefinition, fingerprint


class _NotReady:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<not ready>"


NOT_READY = _NotReady()

_INDICATORS = {
    "sma": indicators.sma,
    "ema": indicators.ema,
    "rsi": indicators.rsi,
    "highest": indicators.highest,
    "lowest": indicators.lowest,
}

_COMPARATORS: Dict[type, Callable[[Decimal, Decimal], bool]] = {
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
}


class EvaluationContext:
    """한 시점의 캔들/포지션과 시계열 캐시."""

    __slots__ = ("candles", "position", "_series")

    def __init__(self, candles: Sequence[Candle], position: Optional[Position]) -> None:
        self.candles = candles
        self.position = position
        self._series: Dict[str, List[Decimal]] = {}

    def series(self, name: str) -> List[Decimal]:
        values = self._series.get(name)
        if values is None:
            values = [getattr(candle, name) for candle in self.candles]
            self._series[name] = values
        return values

    def previous(self) -> "EvaluationContext":
        return EvaluationContext(self.candles[:-1], self.position)


Evaluator = Callable[[EvaluationContext], object]


class _Node(NamedTuple):
    kind: str  # "number" | "bool"
    fn: Evaluator


class _ExpressionCompiler:
    def __init__(self, expression: str, parameters: Mapping[str, Decimal]) -> None:
        self._expression = expression
        self._parameters = parameters

    def compile(self) -> Callable[[EvaluationContext], bool]:
        try:
            tree = ast.parse(self._expression.strip(), mode="eval")
        except SyntaxError as exc:
            raise StrategyCompileError(f"구문 오류: {exc.msg}", self._expression) from exc
        node = self._visit(tree.body)
        if node.kind != "bool":
            self._fail("조건식은 참/거짓을 반환해야 합니다.")
        fn = node.fn
        return lambda ctx: fn(ctx) is True

    def _fail(self, message: str) -> NoReturn:
        raise StrategyCompileError(message, self._expression)

    def _visit(self, node: ast.AST) -> _Node:
        if isinstance(node, ast.Constant):
            return self._constant(node)
        if isinstance(node, ast.Name):
            return self._name(node)
        if isinstance(node, ast.UnaryOp):
            return self._unary(node)
        if isinstance(node, ast.BinOp):
            return self._binary(node)
        if isinstance(node, ast.BoolOp):
            return self._boolean(node)
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.Call):
            return self._call(node)
        self._fail(f"허용되지 않는 구문: {type(node).__name__}")

    def _expect(self, node: ast.AST, kind: str) -> Evaluator:
        compiled = self._visit(node)
        if compiled.kind != kind:
            expected = "숫자" if kind == "number" else "참/거짓"
            self._fail(f"{expected} 식이 필요합니다: {ast.unparse(node)}")
        return compiled.fn

    def _constant(self, node: ast.Constant) -> _Node:
        value = node.value
        if isinstance(value, bool):
            return _Node("bool", lambda ctx: value)
        if isinstance(value, (int, float)):
            number = Decimal(str(value))
            if not number.is_finite():
                self._fail(f"유한한 숫자가 아닙니다: {value!r}")
            return _Node("number", lambda ctx: number)
        self._fail(f"허용되지 않는 상수: {value!r}")

    def _name(self, node: ast.Name) -> _Node:
        name = node.id
        if name in SERIES_NAMES:

            def latest(ctx: EvaluationContext) -> object:
                values = ctx.series(name)
                return values[-1] if values else NOT_READY

            return _Node("number", latest)
        if name == "position_price":
            return _Node(
                "number",
                lambda ctx: ctx.position.average_price if ctx.position is not None else Decimal("0"),
            )
        if name in self._parameters:
            value = self._parameters[name]
            return _Node("number", lambda ctx: value)
        self._fail(f"알 수 없는 이름: {name}")

    def _unary(self, node: ast.UnaryOp) -> _Node:
        if isinstance(node.op, ast.Not):
            operand = self._expect(node.operand, "bool")
            return _Node("bool", lambda ctx: not operand(ctx))
        if isinstance(node.op, (ast.USub, ast.UAdd)):
            operand = self._expect(node.operand, "number")
            negate = isinstance(node.op, ast.USub)

            def signed(ctx: EvaluationContext) -> object:
                value = operand(ctx)
                if value is NOT_READY:
                    return NOT_READY
                return -value if negate else value

            return _Node("number", signed)
        self._fail(f"허용되지 않는 단항 연산자: {type(node.op).__name__}")

    def _binary(self, node: ast.BinOp) -> _Node:
        if not isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div)):
            self._fail(f"허용되지 않는 연산자: {type(node.op).__name__}")
        left = self._expect(node.left, "number")
        right = self._expect(node.right, "number")
        op = node.op

        def arithmetic(ctx: EvaluationContext) -> object:
            a = left(ctx)
            b = right(ctx)
            if a is NOT_READY or b is NOT_READY:
                return NOT_READY
            try:
                if isinstance(op, ast.Add):
                    return a + b
                if isinstance(op, ast.Sub):
                    return a - b
                if isinstance(op, ast.Mult):
                    return a * b
                if b == 0:
                    return NOT_READY
                return a / b
            except ArithmeticError:
                # decimal Overflow/InvalidOperation
                return NOT_READY

        return _Node("number", arithmetic)

    def _boolean(self, node: ast.BoolOp) -> _Node:
        operands = [self._expect(value, "bool") for value in node.values]
        if isinstance(node.op, ast.And):
            return _Node("bool", lambda ctx: all(operand(ctx) for operand in operands))
        return _Node("bool", lambda ctx: any(operand(ctx) for operand in operands))

    def _compare(self, node: ast.Compare) -> _Node:
        operands = [self._expect(node.left, "number")]
        operands.extend(self._expect(comparator, "number") for comparator in node.comparators)
        comparators = []
        for op in node.ops:
            comparator = _COMPARATORS.get(type(op))
            if comparator is None:
                self._fail(f"허용되지 않는 비교 연산자: {type(op).__name__}")
            comparators.append(comparator)

        def compare(ctx: EvaluationContext) -> bool:
            left = operands[0](ctx)
            if left is NOT_READY:
                return False
            for comparator, operand in zip(comparators, operands[1:]):
                right = operand(ctx)
                if right is NOT_READY or not comparator(left, right):
                    return False
                left = right
            return True

        return _Node("bool", compare)

    def _call(self, node: ast.Call) -> _Node:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTION_NAMES:
            self._fail(f"허용되지 않는 함수 호출: {ast.unparse(node.func)}")
        if node.keywords:
            self._fail("키워드 인자는 지원하지 않습니다.")
        name = node.func.id
        args = node.args
        if name in _INDICATORS:
            return self._indicator(name, args)
        if name == "prev":
            return self._prev(args)
        if name in ("crossover", "crossunder"):
            return self._cross(name, args)
        if name == "abs":
            if len(args) != 1:
                self._fail("abs 는 인자 하나가 필요합니다.")
            operand = self._expect(args[0], "number")

            def absolute(ctx: EvaluationContext) -> object:
                value = operand(ctx)
                return NOT_READY if value is NOT_READY else abs(value)

            return _Node("number", absolute)
        # min / max
        if len(args) < 2:
            self._fail(f"{name} 는 인자가 두 개 이상 필요합니다.")
        operands = [self._expect(arg, "number") for arg in args]
        reducer = min if name == "min" else max

        def extreme(ctx: EvaluationContext) -> object:
            values = [operand(ctx) for operand in operands]
            if any(value is NOT_READY for value in values):
                return NOT_READY
            return reducer(values)

        return _Node("number", extreme)

    def _series_name(self, node: ast.AST, function: str) -> str:
        if not isinstance(node, ast.Name) or node.id not in SERIES_NAMES:
            self._fail(f"{function} 의 첫 인자는 시계열 이름이어야 합니다.")
        return node.id

    def _window(self, node: ast.AST, function: str) -> int:
        value: Optional[Decimal] = None
        if isinstance(node, ast.Constant) and isinstance(node.value, int) and not isinstance(node.value, bool):
            value = Decimal(node.value)
        elif isinstance(node, ast.Name) and node.id in self._parameters:
            value = self._parameters[node.id]
        if value is None or value != value.to_integral_value() or value < 1:
            self._fail(f"{function} 의 기간은 양의 정수여야 합니다.")
        return int(value)

    def _indicator(self, name: str, args: Sequence[ast.AST]) -> _Node:
        offset = 0
        if name == "rsi" and len(args) == 1:
            period = 14
        elif len(args) == 2:
            period = self._window(args[1], name)
        elif len(args) == 3 and name in ("highest", "lowest"):
            # 세 번째 인자는 최신 봉에서 몇 봉 앞까지 제외할지
            period = self._window(args[1], name)
            offset = self._window(args[2], name)
        else:
            self._fail(f"{name} 는 (시계열, 기간) 인자가 필요합니다.")
        series = self._series_name(args[0], name)
        function = _INDICATORS[name]

        def indicator(ctx: EvaluationContext) -> object:
            values = ctx.series(series)
            if offset:
                values = values[:-offset]
            result = function(values, period)
            return NOT_READY if result is None else result

        return _Node("number", indicator)

    def _prev(self, args: Sequence[ast.AST]) -> _Node:
        if len(args) == 1:
            offset = 1
        elif len(args) == 2:
            offset = self._window(args[1], "prev")
        else:
            self._fail("prev 는 (시계열, 간격) 인자가 필요합니다.")
        series = self._series_name(args[0], "prev")

        def previous(ctx: EvaluationContext) -> object:
            values = ctx.series(series)
            if len(values) <= offset:
                return NOT_READY
            return values[-1 - offset]

        return _Node("number", previous)

    def _cross(self, name: str, args: Sequence[ast.AST]) -> _Node:
        if len(args) != 2:
            self._fail(f"{name} 는 인자 두 개가 필요합니다.")
        first = self._expect(args[0], "number")
        second = self._expect(args[1], "number")
        upward = name == "crossover"

        def cross(ctx: EvaluationContext) -> bool:
            if len(ctx.candles) < 2:
                return False
            before = ctx.previous()
            values = (first(before), second(before), first(ctx), second(ctx))
            if any(value is NOT_READY for value in values):
                return False
            prev_a, prev_b, cur_a, cur_b = values
            if upward:
                return prev_a <= prev_b and cur_a > cur_b
            return prev_a >= prev_b and cur_a < cur_b

        return _Node("bool", cross)


def compile_expression(expression: str, parameters: Optional[Mapping[str, Decimal]] = None) -> Callable[[EvaluationContext], bool]:
    """조건식 하나를 평가 함수로 컴파일한다."""

    return _ExpressionCompiler(expression, parameters or {}).compile()


class CompiledStrategy(TradingStrategy):
    """컴파일된 사용자 정의 전략."""

    def __init__(self, definition: StrategyDefinition) -> None:
        self.definition = definition
        self.fingerprint = fingerprint(definition)
        self._entry = compile_expression(definition.entry, definition.parameters)
        self._exit = (
            compile_expression(definition.exit, definition.parameters) if definition.exit else None
        )

    @property
    def strategy_id(self) -> str:
        return self.definition.id

    @property
    def min_bars(self) -> int:
        return self.definition.min_bars

    def evaluate(self, candles: Sequence[Candle], position: Optional[Position]) -> StrategySignal:
        if not candles:
            raise ValueError("최소 한 개 이상의 캔들이 필요합니다.")
        latest = candles[-1]
        if not self.is_ready(candles):
            return StrategySignal.hold(latest.market, latest.close, latest.timestamp, "데이터가 부족합니다.")
        if position is None or position.quantity <= Decimal("0"):
            ctx = EvaluationContext(candles, None)
            if self._entry(ctx):
                return self._signal(latest, SignalAction.BUY, f"진입 조건 충족: {self.definition.entry}")
            return StrategySignal.hold(latest.market, latest.close, latest.timestamp, "진입 조건 미충족")

        ctx = EvaluationContext(candles, position)
        take_profit = self.definition.take_profit_pct
        if take_profit is not None and latest.close >= position.average_price * (Decimal("1") + take_profit):
            return self._signal(latest, SignalAction.SELL, "목표 수익 도달")
        stop_loss = self.definition.stop_loss_pct
        if stop_loss is not None and latest.close <= position.average_price * (Decimal("1") - stop_loss):
            return self._signal(latest, SignalAction.SELL, "손절 기준 초과")
        if self._exit is not None and self._exit(ctx):
            return self._signal(latest, SignalAction.SELL, f"청산 조건 충족: {self.definition.exit}")
        return StrategySignal.hold(latest.market, latest.close, latest.timestamp, "보유 유지")

    @staticmethod
    def _signal(latest: Candle, action: SignalAction, reason: str) -> StrategySignal:
        return StrategySignal(
            market=latest.market,
            action=action,
            price=latest.close,
            timestamp=latest.timestamp,
            reason=reason,
            confidence=Decimal("1"),
        )


def compile_strategy(definition: StrategyDefinition) -> CompiledStrategy:
    """정의를 검증하고 실행 가능한 전략으로 변환한다."""

    return CompiledStrategy(definition)


__all__ = [
    "CompiledStrategy",
    "EvaluationContext",
    "NOT_READY",
    "compile_expression",
    "compile_strategy",
]
