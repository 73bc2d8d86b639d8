"""Lookahead scheduler keyed on the audio clock.

Actions sit in a heap ordered by (target time, sequence). ``pump`` runs every
action due within ``clock + lookahead``; a background thread calls it at a fixed
wall-clock cadence. Actions receive their target time, which is what they should
hand to the backend as the automation anchor.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext

from .logging_utils import log_exception

_LOGGER = logging.getLogger("sqaudio.scheduler")

Action = Callable[[float], None]
Clock = Callable[[], float]


class ClockScheduler:
    def __init__(
        self,
        clock: Clock,
        *,
        lookahead_sec: float = 0.12,
        interval_ms: float = 25.0,
        background: bool = True,
        guard: AbstractContextManager[object] | None = None,
    ) -> None:
        self._clock = clock
        self.lookahead_sec = float(lookahead_sec)
        self.interval_ms = float(interval_ms)
        self._background = background
        self._guard: AbstractContextManager[object] = guard if guard is not None else nullcontext()
        self._lock = threading.Lock()
        self._queue: list[tuple[float, int, Action]] = []
        self._seq = itertools.count()
        self._running = False
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def schedule(self, target_time: float, action: Action) -> None:
        with self._lock:
            heapq.heappush(self._queue, (float(target_time), next(self._seq), action))

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
        return dropped

    def pump(self) -> int:
        """Run every action due within the lookahead horizon; return how many ran."""
        horizon = self._clock() + self.lookahead_sec
        ran = 0
        with self._guard:
            while True:
                with self._lock:
                    if not self._queue or self._queue[0][0] > horizon:
                        break
                    target, _, action = heapq.heappop(self._queue)
                try:
                    action(target)
                except Exception as exc:
                    _LOGGER.error("Scheduled action at %.4f failed: %s", target, exc, exc_info=True)
                    log_exception("scheduled action", exc)
                ran += 1
        return ran

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if not self._background:
            return
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._run, args=(stop_event,), name="sqaudio-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Halt pumping and discard every pending action."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
            self._stop_event = None
        dropped = self.clear()
        if dropped:
            _LOGGER.debug("Discarded %d pending actions", dropped)

    def join(self, timeout: float = 1.0) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self, stop_event: threading.Event) -> None:
        interval = self.interval_ms / 1000.0
        next_call = time.monotonic()
        while not stop_event.is_set():
            now = time.monotonic()
            if now >= next_call:
                next_call = max(next_call + interval, now)
                self.pump()
            else:
                stop_event.wait(min(interval, next_call - now))
