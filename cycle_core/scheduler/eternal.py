"""
ETERNAL_SCHEDULER
=================

Runs bounded loops indefinitely on a timer, supervised by a watchdog.

A "loop" is one call to ``LoopController.start(input, max_cycles_per_loop)``.
The scheduler keeps at most one pending loop timer; rescheduling always
replaces it.

Lifecycle
---------
::

    start_eternal(config)
      ├── stop_eternal() first if already active
      ├── arm the watchdog
      ├── run loop #1 now, in the caller's thread
      └── schedule the next loop after interval_seconds

    every loop
      ├── success → adapt interval, schedule next after interval_seconds
      ├── busy    → controller already running (API run, draining run):
      │             not a failure, retry after 5s
      └── failure → auto_restart ? schedule retry after 5s : stop_eternal()

    watchdog (every 30s)
      └── now - last_activity > interval + 30s
            → start a new generation (the stuck loop's completion is ignored),
              stop the controller and wait up to watchdog_drain_seconds
              for it to go idle, then trigger a loop immediately

Adaptive Interval
-----------------
After each successful loop: slower than 30s → interval + 10, faster than 10s
→ interval - 5. The result is always clamped to [min_interval, max_interval].

Testing Hooks
-------------
``timer_factory(delay, fn)`` must return an object with ``cancel()``; the
default wraps a daemon ``threading.Timer``. ``clock()`` returns seconds
(default ``time.time``). Tests inject fakes for both and fire timers by hand.

Usage::

    scheduler = build_scheduler(load_config())
    scheduler.start_eternal({"interval_seconds": 20})
    ...
    scheduler.stop_eternal()
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

from ..config.loader import CycleCoreConfig, EternalConfig
from ..events import ETERNAL_LOOP_START, ETERNAL_LOOP_STATS, ETERNAL_LOOP_STOP, EventChannel
from ..loop import LoopAlreadyRunningError, LoopController, build_controller

logger = logging.getLogger(__name__)

# Loop outcomes
LOOP_OK = "ok"
LOOP_BUSY = "busy"
LOOP_FAILED = "failed"

ETERNAL_PROMPTS = [
    "Pick one everyday system that quietly fails and trace how it recovers.",
    "Take the last result and find a real-world process that behaves the same way.",
    "What small experiment would show whether the last idea is actually true?",
    "Describe the previous result to an engineer who must build it tomorrow.",
    "Which assumption in recent cycles is weakest, and what evidence would test it?",
    "Find a historical event that mirrors the current line of inquiry.",
    "Turn the latest finding into a step-by-step procedure someone could follow.",
    "What would break first if the previous idea were scaled up a thousand times?",
    "Compare the current topic with how a biological system solves the same problem.",
    "Name a measurable quantity involved in the last result and estimate its value.",
]

TimerFactory = Callable[[float, Callable[[], None]], Any]


def thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    """Default timer factory: a started daemon threading.Timer."""
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


class EternalScheduler:
    """
    Continuous scheduler around one LoopController.

    Timer callbacks carry the generation they were created in; stop_eternal()
    and start_eternal() bump the generation so late callbacks are ignored.
    """

    def __init__(
        self,
        controller: LoopController,
        config: EternalConfig = None,
        events: EventChannel = None,
        timer_factory: TimerFactory = None,
        clock: Callable[[], float] = None,
        prompts: list = None,
    ):
        self.controller = controller
        self.config = config or EternalConfig()
        self.events = events if events is not None else controller.events
        self._timer_factory = timer_factory or thread_timer
        self._clock = clock or time.time
        self.prompts = prompts or ETERNAL_PROMPTS

        self._lock = threading.RLock()
        self._generation = 0
        self._loop_timer = None
        self._watchdog_timer = None
        self.next_run_at: Optional[float] = None

        self.is_eternal = False
        self.loop_count = 0
        self.total_cycles = 0
        self.last_loop_duration_ms = 0
        self.last_activity: Optional[float] = None
        self.start_time: Optional[float] = None
        self.consecutive_failures = 0
        self.total_failures = 0
        self.watchdog_restarts = 0
        self.last_error: Optional[str] = None

    # ========================================================================
    # CONTROL
    # ========================================================================

    def start_eternal(self, config: Union[EternalConfig, Dict, None] = None) -> Dict:
        """
        Start (or restart) eternal mode. Runs the first loop before returning.

        Args:
            config: EternalConfig, or a partial dict merged over the current one

        Returns:
            get_status() after the first loop
        """
        if self.is_eternal:
            self.stop_eternal()

        with self._lock:
            if isinstance(config, EternalConfig):
                config.validate()
                self.config = config
            elif config:
                self.config = self.config.merged(config)
            self._generation += 1
            generation = self._generation
            self.is_eternal = True
            self.loop_count = 0
            self.total_cycles = 0
            self.consecutive_failures = 0
            self.start_time = self._clock()
            self.last_activity = self.start_time

        logger.info("Eternal mode started (interval=%ss, max_cycles_per_loop=%d)",
                    self.config.interval_seconds, self.config.max_cycles_per_loop)
        self.events.emit(ETERNAL_LOOP_START, {
            "interval_seconds": self.config.interval_seconds,
            "config": self.config.to_dict(),
        })

        self._arm_watchdog(generation)
        self._run_and_schedule(generation)
        return self.get_status()

    def stop_eternal(self) -> bool:
        """
        Cancel both timers and stop the controller.

        Returns:
            True if eternal mode was active
        """
        with self._lock:
            if not self.is_eternal:
                return False
            self.is_eternal = False
            self._generation += 1
            self._cancel_loop_timer()
            if self._watchdog_timer is not None:
                self._watchdog_timer.cancel()
                self._watchdog_timer = None

        self.controller.stop()
        runtime = self._clock() - self.start_time if self.start_time else 0.0
        logger.info("Eternal mode stopped: %d loops, %d cycles, %.1fs runtime",
                    self.loop_count, self.total_cycles, runtime)
        self.events.emit(ETERNAL_LOOP_STOP, {
            "loop_count": self.loop_count,
            "total_cycles": self.total_cycles,
            "runtime_seconds": round(runtime, 1),
        })
        return True

    def update_config(self, partial: Dict[str, Any]) -> EternalConfig:
        """
        Merge settings into the live config.

        ``interval_seconds`` is clamped into bounds. If it changed while a loop
        timer is pending, the timer is replaced with one for the new interval.

        Raises:
            ConfigError: Unknown keys or invalid values
        """
        with self._lock:
            previous = self.config.interval_seconds
            self.config = self.config.merged(partial)
            logger.info("Eternal config updated: %s", partial)
            if self.config.interval_seconds != previous and self._loop_timer is not None and self.is_eternal:
                self._schedule(self.config.interval_seconds, self._generation)
            return self.config

    # ========================================================================
    # LOOP EXECUTION
    # ========================================================================

    def _is_current(self, generation: int) -> bool:
        return self.is_eternal and generation == self._generation

    def _run_and_schedule(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        outcome = self._execute_loop()
        if not self._is_current(generation):
            return
        if outcome == LOOP_OK:
            self._schedule(self.config.interval_seconds, generation)
        elif outcome == LOOP_BUSY:
            self._schedule(self.config.retry_backoff_seconds, generation)
        elif self.config.auto_restart:
            logger.info("Retrying eternal loop in %ss", self.config.retry_backoff_seconds)
            self._schedule(self.config.retry_backoff_seconds, generation)
        else:
            logger.warning("Eternal loop failed and auto_restart is off; stopping eternal mode")
            self.stop_eternal()

    def _execute_loop(self) -> str:
        with self._lock:
            previous_activity = self.last_activity
            self.loop_count += 1
            loop_number = self.loop_count
            self.last_activity = self._clock()
        loop_input = self.generate_input(loop_number)
        started = self._clock()
        logger.info("Eternal loop %d starting", loop_number)

        try:
            result = self.controller.start(loop_input, self.config.max_cycles_per_loop)
        except LoopAlreadyRunningError as e:
            with self._lock:
                self.loop_count -= 1
                self.last_activity = previous_activity
            logger.warning("Eternal loop %d deferred, controller busy: %s", loop_number, e)
            return LOOP_BUSY
        except Exception as e:
            with self._lock:
                self.consecutive_failures += 1
                self.total_failures += 1
                self.last_error = str(e)
                self.last_activity = self._clock()
            logger.error("Eternal loop %d failed: %s", loop_number, e, exc_info=True)
            return LOOP_FAILED

        duration = self._clock() - started
        with self._lock:
            self.total_cycles += result.cycles_run
            self.last_loop_duration_ms = int(duration * 1000)
            self.last_activity = self._clock()
            self.consecutive_failures = 0
            if self.config.adaptive_interval:
                self.config.interval_seconds = self.adjust_interval(duration)

        logger.info("Eternal loop %d %s in %.1fs (%d cycles)",
                    loop_number, result.status.value, duration, result.cycles_run)
        self.events.emit(ETERNAL_LOOP_STATS, {
            "loop_count": loop_number,
            "status": result.status.value,
            "reason": result.reason,
            "cycles_run": result.cycles_run,
            "total_cycles": self.total_cycles,
            "duration_ms": self.last_loop_duration_ms,
            "interval_seconds": self.config.interval_seconds,
        })
        return LOOP_OK

    def adjust_interval(self, duration_seconds: float) -> float:
        """The interval that should follow a loop of the given duration."""
        cfg = self.config
        interval = cfg.interval_seconds
        if duration_seconds > cfg.slow_loop_seconds:
            interval += cfg.interval_step_up
        elif duration_seconds < cfg.fast_loop_seconds:
            interval -= cfg.interval_step_down
        return cfg.clamp_interval(interval)

    def generate_input(self, loop_number: int) -> str:
        base = self.prompts[loop_number % len(self.prompts)]
        return f"{base} (Loop {loop_number}, building on {self.total_cycles} earlier cycles.)"

    # ========================================================================
    # TIMERS
    # ========================================================================

    def _cancel_loop_timer(self) -> None:
        if self._loop_timer is not None:
            self._loop_timer.cancel()
            self._loop_timer = None
            self.next_run_at = None

    def _schedule(self, delay: float, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self._cancel_loop_timer()
            self._loop_timer = self._timer_factory(delay, lambda: self._on_loop_timer(generation))
            self.next_run_at = self._clock() + delay
        logger.debug("Next eternal loop in %ss", delay)

    def _on_loop_timer(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self._loop_timer = None
            self.next_run_at = None
        self._run_and_schedule(generation)

    def _arm_watchdog(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self._watchdog_timer = self._timer_factory(
                self.config.watchdog_period_seconds, lambda: self._on_watchdog(generation)
            )

    def _on_watchdog(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        if not self.is_stale():
            self._arm_watchdog(generation)
            return

        idle = self._clock() - self.last_activity
        logger.warning("Watchdog: no activity for %.0fs, forcing a loop", idle)
        with self._lock:
            self._cancel_loop_timer()
            self.watchdog_restarts += 1
            self._generation += 1
            generation = self._generation
            self.last_activity = self._clock()
        self._arm_watchdog(generation)

        if self.controller.is_running:
            self.controller.stop()
            if not self.controller.wait_idle(self.config.watchdog_drain_seconds):
                logger.warning("Watchdog: run %s still draining after %ss",
                               self.controller.run_id, self.config.watchdog_drain_seconds)
        self._run_and_schedule(generation)

    def is_stale(self) -> bool:
        if self.last_activity is None:
            return False
        limit = self.config.interval_seconds + self.config.watchdog_grace_seconds
        return self._clock() - self.last_activity > limit

    # ========================================================================
    # STATUS
    # ========================================================================

    def get_status(self) -> Dict:
        controller = self.controller.get_status()
        runtime = self._clock() - self.start_time if self.is_eternal and self.start_time else 0.0
        return {
            "is_running": controller["is_running"],
            "cycle_id": controller["cycle_id"],
            "loop_count": self.loop_count,
            "total_cycles": self.total_cycles,
            "interval_seconds": self.config.interval_seconds,
            "last_loop_duration_ms": self.last_loop_duration_ms,
            "is_eternal": self.is_eternal,
            "state": controller["state"],
            "runtime_seconds": round(runtime, 1),
            "last_activity": self.last_activity,
            "next_run_at": self.next_run_at,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "watchdog_restarts": self.watchdog_restarts,
            "last_error": self.last_error,
            "config": self.config.to_dict(),
        }


def build_scheduler(
    config: CycleCoreConfig = None,
    controller: LoopController = None,
    timer_factory: TimerFactory = None,
    clock: Callable[[], float] = None,
) -> EternalScheduler:
    """Wire an EternalScheduler (and its controller, unless given)."""
    config = config or CycleCoreConfig()
    controller = controller or build_controller(config)
    return EternalScheduler(
        controller,
        config=EternalConfig.from_dict(config.eternal.to_dict()),
        timer_factory=timer_factory,
        clock=clock,
    )
