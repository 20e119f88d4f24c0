from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Literal

from clubcore.core.config import get_settings
from clubcore.services.idempotency import purge_expired_idempotency_records
from clubcore.services.rate_limit import sweep_rate_limits


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_idempotency", "sweep_rate_limits"]


class PeriodicTask:
    """Run `func` every `interval_s` seconds until stopped.

    Owned by the process lifecycle rather than any request: a failing cycle is
    logged and the loop keeps going.
    """

    def __init__(self, name: str, interval_s: float, func: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self.interval_s = interval_s
        self._func = func
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        try:
            result = await self._func()
        except Exception:
            self.failures += 1
            logger.exception("maintenance_task_failed task=%s", self.name)
            return None
        finally:
            self.runs += 1
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"maintenance:{self.name}")
        logger.info("maintenance_task_started task=%s interval_s=%s", self.name, self.interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("maintenance_task_stopped task=%s", self.name)


def build_sweepers() -> list[PeriodicTask]:
    # Build the background sweepers with intervals from settings.
    settings = get_settings()
    return [
        PeriodicTask(
            "prune_idempotency",
            settings.idempotency_sweep_interval_s,
            purge_expired_idempotency_records,
        ),
        PeriodicTask("sweep_rate_limits", settings.rl_sweep_interval_s, sweep_rate_limits),
    ]


async def run_maintenance_task(task: MaintenanceTask) -> int:
    # Run one maintenance task on demand (ops endpoint, scripts).
    if task == "prune_idempotency":
        return await purge_expired_idempotency_records()
    if task == "sweep_rate_limits":
        return await sweep_rate_limits()
    raise ValueError(f"Unknown maintenance task: {task}")
