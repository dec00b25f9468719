"""트레이딩 오케스트레이션과 스케줄러."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Set
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_RUNNING
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ..config.settings import AppSettings, get_settings
from ..data import TradingCycleResult
from ..data.repository import TradingRepository
from ..services.alerts import AlertService
from ..services.reporting import PerformanceReporter
from ..services.strategy_runner import StrategyRunner
from ..services.trading import TradingEngine
from ..strategies.definition import StrategyDefinition


class TradingOrchestrator:
    """트레이딩 엔진을 주기적으로 실행하고 결과를 저장/전파한다."""

    def __init__(
        self,
        engine: TradingEngine,
        repository: TradingRepository,
        alerts: AlertService,
        reporter: PerformanceReporter,
        runner: StrategyRunner,
        *,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self._engine = engine
        self._repository = repository
        self._alerts = alerts
        self._reporter = reporter
        self._runner = runner
        self._settings = settings or get_settings()
        self._timezone = ZoneInfo(self._settings.scheduler_timezone)
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._interval_seconds = self._settings.trading_interval_seconds
        self._lock = asyncio.Lock()
        self._running = False
        self._tasks: Set[asyncio.Task[None]] = set()
        self._last_result: Optional[TradingCycleResult] = None
        self._last_error: Optional[str] = None

    @property
    def engine(self) -> TradingEngine:
        return self._engine

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.add_job(
            self._scheduled_cycle,
            IntervalTrigger(seconds=self._interval_seconds, timezone=self._timezone),
            next_run_time=datetime.now(self._timezone),
        )
        report_time = self._settings.daily_report_time
        self._scheduler.add_job(
            self._send_daily_report,
            CronTrigger(hour=report_time.hour, minute=report_time.minute, timezone=self._timezone),
        )
        self._scheduler.start()
        self._running = True
        logger.info("트레이딩 스케줄러 시작 ({}초 간격, 전략 {})", self._interval_seconds, self._engine.strategy_id)

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        logger.info("트레이딩 스케줄러 종료")

    def pause(self) -> None:
        if self._running:
            self._scheduler.pause()

    def resume(self) -> None:
        """스케줄러를 재개하고 리스크 중단 상태도 해제한다."""

        self._engine.risk_controller.resume()
        if self._running:
            self._scheduler.resume()

    def is_running(self) -> bool:
        return self._running and self._scheduler.state == STATE_RUNNING

    def activate(self, definition: StrategyDefinition) -> str:
        """정의를 컴파일해 다음 사이클부터 사용한다. 지문을 반환한다."""

        compiled = self._runner.compile(definition)
        self._engine.set_strategy(compiled)
        return compiled.fingerprint

    async def _scheduled_cycle(self) -> None:
        # AsyncIOExecutor 는 코루틴 잡을 이벤트 루프의 태스크로 실행한다.
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        await self.run_cycle()

    async def run_cycle(self) -> Optional[TradingCycleResult]:
        async with self._lock:
            was_halted = self._engine.risk_controller.is_halted()
            try:
                result = await self._engine.run_cycle()
            except Exception as exc:
                logger.exception("트레이딩 사이클 실패")
                self._last_error = str(exc)
                await self._alerts.system_alert(f"트레이딩 사이클 실패: {exc}")
                return None
            self._last_result = result
            self._last_error = None
            try:
                await self._repository.record_cycle(result)
            except Exception as exc:
                logger.exception("사이클 저장 실패")
                self._last_error = str(exc)
            await self._alerts.trade_alert(result)
            if not was_halted and self._engine.risk_controller.is_halted():
                reason = self._engine.risk_controller.status().get("halt_reason")
                await self._alerts.risk_alert(str(reason), symbol=self._engine.market)
            return result

    async def _send_daily_report(self) -> None:
        today = datetime.now(self._timezone).date()
        try:
            report = await self._reporter.generate(today, include_trades=True)
        except Exception:
            logger.exception("일일 리포트 생성 실패")
            return
        await self._alerts.system_alert("일일 성과 리포트\n" + report.format_markdown())

    def status(self) -> dict[str, object]:
        return {
            "running": self.is_running(),
            "symbol": self._engine.market,
            "strategy_id": self._engine.strategy_id,
            "last_result": self._format_result(self._last_result),
            "risk": self._engine.risk_status(),
            "portfolio": self._engine.portfolio.snapshot(),
            "strategy_cache": self._runner.cache_info(),
            "last_error": self._last_error,
        }

    def _format_result(self, result: Optional[TradingCycleResult]) -> Optional[dict[str, object]]:
        if result is None:
            return None
        return {
            "market": result.signal.market,
            "strategy_id": result.strategy_id,
            "action": result.signal.action.value,
            "price": str(result.signal.price),
            "timestamp": result.signal.timestamp.isoformat(),
            "reason": result.signal.reason,
            "status": "error" if result.error else ("executed" if result.execution else "skipped"),
            "pnl": str(result.pnl),
            "error": result.error,
            "notes": result.notes,
        }


__all__ = ["TradingOrchestrator"]
