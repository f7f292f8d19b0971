from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Dict, List, Optional

logger = logging.getLogger("background")


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on a daemon thread until stopped.

    A failing run is logged and the loop carries on with the next tick.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._func = func
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.last_result: Any = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"periodic-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started %s every %ss", self.name, self.interval)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_now()

    def run_now(self) -> Any:
        try:
            self.last_result = self._func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
            self.last_result = None
        self.runs += 1
        return self.last_result

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Stopped %s", self.name)


class BackgroundScheduler:
    """Owns the periodic jobs so they start and stop with the application."""

    def __init__(self) -> None:
        self._tasks: Dict[str, PeriodicTask] = {}

    def add(self, name: str, interval: float, func: Callable[[], Any]) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Task '{name}' is already registered")
        task = PeriodicTask(name, interval, func)
        self._tasks[name] = task
        return task

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()

    def stop(self) -> None:
        for task in self._tasks.values():
            task.stop()

    def status(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "interval_seconds": t.interval, "running": t.running, "runs": t.runs}
            for t in self._tasks.values()
        ]


def build_default_scheduler() -> BackgroundScheduler:
    from src.course_copilot.config import settings
    from src.course_copilot.services.background.autosave import autosave_scheduler
    from src.course_copilot.services.background.timeout import timeout_monitor

    scheduler = BackgroundScheduler()
    scheduler.add("autosave", settings.autosave_interval_seconds, autosave_scheduler.run_once)
    scheduler.add("timeouts", settings.timeout_check_interval_seconds, timeout_monitor.run_once)
    return scheduler
