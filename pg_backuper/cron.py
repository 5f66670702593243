"""Hourly scheduler for the long-running `start` mode."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)


def is_dump_hour(now: datetime, interval_hours: int, dump_hour: int = 3) -> bool:
    """True when the hour falls on the dump slot of the interval."""
    if interval_hours <= 0:
        raise ValueError(f"interval_hours must be positive, got {interval_hours}")
    return now.hour % interval_hours == dump_hour % interval_hours


def next_tick(now: datetime) -> datetime:
    """Start of the next hour."""
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def run_scheduler(
    callback: Callable[[datetime], None],
    interval_hours: int = 24,
    dump_hour: int = 3,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    max_ticks: int | None = None,
) -> None:
    """Run a blocking loop that wakes every hour.

    ``callback(now)`` runs on ticks where ``is_dump_hour`` holds. Failures are
    logged and the loop continues. ``max_ticks`` bounds the loop for tests.
    """
    clock = clock or (lambda: datetime.now(UTC).astimezone())
    ticks = 0

    while max_ticks is None or ticks < max_ticks:
        target = next_tick(clock())
        wait_seconds = (target - clock()).total_seconds()
        if wait_seconds > 0:
            sleep(wait_seconds)
        ticks += 1

        now = clock()
        if not is_dump_hour(now, interval_hours, dump_hour):
            continue

        logger.info(f"Scheduled backup triggered at {now.strftime('%Y-%m-%d %H:%M')}")
        try:
            callback(now)
        except Exception:
            logger.exception("Scheduled backup failed")
