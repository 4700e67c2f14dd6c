from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from gigaid.nba.orchestrator import EngineOrchestrator


logger = logging.getLogger("gigaid.nba.engine")

TickCallback = Callable[[], None]


class Ticker(Protocol):
    def start(self, callback: TickCallback, interval_seconds: float) -> None: ...

    def stop(self) -> None: ...


class IntervalTicker:
    def __init__(self, name: str = "nba-scheduler") -> None:
        self.name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self, callback: TickCallback, interval_seconds: float) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("ticker already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(callback, interval_seconds),
            name=self.name,
            daemon=True,
        )
        self._thread.start()

    def _loop(self, callback: TickCallback, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            callback()
            if self._stop_event.wait(interval_seconds):
                break

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None


class ManualTicker:
    def __init__(self) -> None:
        self.callback: TickCallback | None = None
        self.interval_seconds: float | None = None
        self.ticks = 0

    def start(self, callback: TickCallback, interval_seconds: float) -> None:
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.tick()

    def tick(self) -> None:
        if self.callback is None:
            raise RuntimeError("ticker is not running")
        self.ticks += 1
        self.callback()

    def stop(self) -> None:
        self.callback = None


class EngineScheduler:
    def __init__(self, orchestrator: EngineOrchestrator, ticker: Ticker | None = None) -> None:
        self.orchestrator = orchestrator
        self.ticker = ticker or IntervalTicker()
        self.running = False
        self.skipped_ticks = 0
        self._cycle_lock = threading.Lock()

    def start(self, interval_minutes: float) -> None:
        if self.running:
            return
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self.running = True
        logger.info("nba.scheduler.started", extra={"interval_minutes": interval_minutes})
        self.ticker.start(self.tick, interval_minutes * 60.0)

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.ticker.stop()
        logger.info("nba.scheduler.stopped")

    def tick(self) -> None:
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("nba.scheduler.tick_skipped", extra={"reason": "PREVIOUS_CYCLE_RUNNING"})
            return
        try:
            self.orchestrator.run_cycle()
        except Exception as exc:
            logger.exception("nba.scheduler.cycle_failed", extra={"error": str(exc)})
        finally:
            self._cycle_lock.release()
