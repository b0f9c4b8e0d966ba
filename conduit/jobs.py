"""
Wall-clock job scheduling

Three policies run a callback forever on a daemon thread:

- Offsets: fire at fixed minutes past the hour (e.g. 5 and 35)
- Intervals: ``start, start+interval, ...`` expanded into offsets
- Random: sleep ``fixed + random(spread)`` minutes between firings

Only minutes are tracked, so a firing lands anywhere inside its minute.
Offsets inside one runner must be spaced further apart than the slowest job;
a job that overruns the next offset makes that offset fire late or right away.
Sources that may overlap each other get their own runner.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from .config import JobConfig

LOGGER = logging.getLogger("conduit.jobs")

MINUTES_PER_HOUR = 60
SECONDS_PER_MINUTE = 60
DEFAULT_RANDOM_SPREAD = 5
MIN_RANDOM_DELAY_MINUTES = 1

JobCallback = Callable[[], None]


def _current_minute() -> int:
    return datetime.now().minute


def normalize_offsets(offsets: Iterable[int]) -> tuple[int, ...]:
    """Drop out-of-range offsets, dedupe and sort."""
    return tuple(sorted({offset for offset in offsets if 0 <= offset < MINUTES_PER_HOUR}))


def minutes_until(offset: int, minute: int) -> int:
    return (offset - minute) % MINUTES_PER_HOUR


def interval_offsets(start: int, interval: int) -> tuple[int, ...]:
    """Expand ``start`` + ``interval`` into minute offsets within one hour."""
    if start < 0 or start >= MINUTES_PER_HOUR:
        start = 0
    if interval <= 0 or start + interval > MINUTES_PER_HOUR:
        return (start,)
    return tuple(range(start, MINUTES_PER_HOUR, interval))


class _JobRunnerBase:
    def __init__(
        self,
        name: str,
        *,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self._sleep = sleep
        self._logger = logger or LOGGER

    def _start(self) -> threading.Thread:
        thread = threading.Thread(target=self._loop, name=f"conduit-job-{self.name}", daemon=True)
        thread.start()
        return thread

    def _loop(self) -> None:
        raise NotImplementedError

    def _fire(self, callback: JobCallback) -> None:
        try:
            callback()
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.exception("[job] %s: job failed: %s", self.name, exc)


class OffsetJobRunner(_JobRunnerBase):
    def __init__(
        self,
        name: str,
        *,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(name, sleep=sleep, logger=logger)
        self._clock = clock or _current_minute
        self._jobs: list[tuple[int, JobCallback]] = []

    @property
    def offsets(self) -> tuple[int, ...]:
        return normalize_offsets(offset for offset, _ in self._jobs)

    def add_job(self, offset: int, callback: JobCallback) -> bool:
        if not 0 <= offset < MINUTES_PER_HOUR:
            return False
        if (offset, callback) not in self._jobs:
            self._jobs.append((offset, callback))
            self._jobs.sort(key=lambda entry: entry[0])
        return True

    def first_index(self, minute: int) -> int:
        for idx, (offset, _) in enumerate(self._jobs):
            if offset >= minute:
                return idx
        return 0

    def run(self) -> threading.Thread | None:
        if not self._jobs:
            self._logger.debug("[job] %s: no work", self.name)
            return None
        for offset, _ in self._jobs:
            self._logger.debug("[job] %s: %d", self.name, offset)
        return self._start()

    def _loop(self) -> None:
        minute = self._clock()
        idx = self.first_index(minute)
        last_offset: int | None = None
        self._logger.info("[job] %s: first is %d", self.name, self._jobs[idx][0])

        while True:
            offset, callback = self._jobs[idx]
            delay = minutes_until(offset, minute)
            # Wrapped back onto the offset that just fired: wait for the next hour.
            if delay == 0 and idx == 0 and offset == last_offset:
                delay = MINUTES_PER_HOUR

            if delay > 0:
                self._logger.debug("[job] %s: sleeping %d minutes", self.name, delay)
                self._sleep(delay * SECONDS_PER_MINUTE)

            self._fire(callback)
            last_offset = offset
            idx = (idx + 1) % len(self._jobs)
            minute = self._clock()


def offset_runner(name: str, offsets: Iterable[int], callback: JobCallback, **kwargs) -> OffsetJobRunner:
    runner = OffsetJobRunner(name, **kwargs)
    for offset in offsets:
        runner.add_job(offset, callback)
    return runner


class RandomJobRunner(_JobRunnerBase):
    def __init__(
        self,
        name: str,
        fixed: int,
        spread: int,
        callback: JobCallback,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(name, sleep=sleep, logger=logger)
        self.fixed = fixed
        self.spread = spread
        self._callback = callback
        self._rng = rng or random.Random()

    def next_delay(self) -> int:
        delay = self.fixed
        if self.spread > 0:
            delay += self._rng.randrange(self.spread)
        if delay <= 0:
            delay = MIN_RANDOM_DELAY_MINUTES
        return delay

    def run(self) -> threading.Thread:
        return self._start()

    def _loop(self) -> None:
        while True:
            delay = self.next_delay()
            self._logger.debug("[job] random: %s: sleeping %d minutes", self.name, delay)
            self._sleep(delay * SECONDS_PER_MINUTE)
            self._fire(self._callback)


JobRunner = OffsetJobRunner | RandomJobRunner


def build_job_runner(
    name: str,
    config: JobConfig,
    callback: JobCallback,
    *,
    clock: Callable[[], int] | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> JobRunner:
    """Pick a policy: explicit offsets, then random bounds, then intervals."""
    if config.offsets:
        return offset_runner(name, config.offsets, callback, clock=clock, sleep=sleep, logger=logger)

    if config.rand_max > 0:
        fixed = max(config.rand_min, 0)
        spread = config.rand_max - fixed
        if spread < 0:
            spread = DEFAULT_RANDOM_SPREAD
        return RandomJobRunner(name, fixed, spread, callback, rng=rng, sleep=sleep, logger=logger)

    if config.every_interval > 0:
        offsets = interval_offsets(config.every_start, config.every_interval)
        return offset_runner(name, offsets, callback, clock=clock, sleep=sleep, logger=logger)

    return OffsetJobRunner(name, clock=clock, sleep=sleep, logger=logger)
