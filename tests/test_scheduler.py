import threading

import pytest

from cycle_core.config.loader import ConfigError, EternalConfig
from cycle_core.events import ETERNAL_LOOP_START, ETERNAL_LOOP_STATS, ETERNAL_LOOP_STOP
from cycle_core.loop import LoopExecutionError
from cycle_core.models import LoopState, RunResult
from cycle_core.scheduler import ETERNAL_PROMPTS, EternalScheduler, build_scheduler

from conftest import GENERATOR_OUTPUTS, FakeController, FakeLLMClient


@pytest.fixture
def controller(clock):
    return FakeController(clock=clock)


@pytest.fixture
def scheduler(controller, timers, clock):
    return EternalScheduler(controller, timer_factory=timers, clock=clock)


def loop_timers(timers, scheduler):
    """Pending timers other than the watchdog."""
    return [t for t in timers.pending() if t is not scheduler._watchdog_timer]


class TestLifecycle:

    def test_first_loop_runs_immediately(self, scheduler, controller, timers):
        status = scheduler.start_eternal()

        assert controller.calls == [(
            f"{ETERNAL_PROMPTS[1]} (Loop 1, building on 0 earlier cycles.)", 3,
        )]
        assert status["is_eternal"]
        assert status["loop_count"] == 1
        assert status["total_cycles"] == 3

        watchdog, loop = timers.timers
        assert watchdog.delay == 30
        # fast loop: 30 - 5
        assert loop.delay == 25
        assert scheduler.next_run_at is not None

    def test_timer_runs_next_loop(self, scheduler, controller, timers):
        scheduler.start_eternal()
        loop_timers(timers, scheduler)[0].fire()

        assert scheduler.loop_count == 2
        assert scheduler.total_cycles == 6
        assert controller.calls[1][0].endswith("(Loop 2, building on 3 earlier cycles.)")
        assert [t.delay for t in loop_timers(timers, scheduler)] == [20]

    def test_at_most_one_pending_loop_timer(self, scheduler, timers):
        scheduler.start_eternal()
        for _ in range(3):
            loop_timers(timers, scheduler)[0].fire()
            assert len(loop_timers(timers, scheduler)) == 1

    def test_stop_cancels_everything(self, scheduler, controller, timers):
        scheduler.start_eternal()
        assert scheduler.stop_eternal()

        assert timers.pending() == []
        assert not scheduler.is_eternal
        assert controller.stop_calls == 1
        assert scheduler.next_run_at is None
        assert scheduler.stop_eternal() is False

    def test_late_callback_after_stop_is_ignored(self, scheduler, controller, timers):
        scheduler.start_eternal()
        stale = loop_timers(timers, scheduler)[0]
        scheduler.stop_eternal()

        stale.fn()
        assert scheduler.loop_count == 1
        assert len(controller.calls) == 1

    def test_restart_resets_counters(self, scheduler, timers):
        scheduler.start_eternal()
        loop_timers(timers, scheduler)[0].fire()
        first_timers = list(timers.pending())

        scheduler.start_eternal({"max_cycles_per_loop": 1})

        assert all(t.cancelled for t in first_timers)
        assert scheduler.loop_count == 1
        assert scheduler.total_cycles == 1
        assert scheduler.config.max_cycles_per_loop == 1

    def test_events(self, scheduler, controller):
        names = []
        controller.events.subscribe(lambda event: names.append(event.name))
        scheduler.start_eternal()
        scheduler.stop_eternal()

        assert names == [ETERNAL_LOOP_START, ETERNAL_LOOP_STATS, ETERNAL_LOOP_STOP]

    def test_status_keys(self, scheduler):
        scheduler.start_eternal()
        status = scheduler.get_status()

        for key in ("is_running", "cycle_id", "loop_count", "total_cycles", "interval_seconds",
                    "last_loop_duration_ms", "is_eternal", "state", "runtime_seconds"):
            assert key in status


class TestAdaptiveInterval:

    @pytest.mark.parametrize("interval,duration,expected", [
        (30, 45, 40),
        (115, 45, 120),
        (30, 5, 25),
        (12, 1, 10),
        (30, 20, 30),
    ])
    def test_bounds(self, controller, interval, duration, expected):
        scheduler = EternalScheduler(controller, EternalConfig(interval_seconds=interval))
        assert scheduler.adjust_interval(duration) == expected

    def test_slow_loop_widens_interval(self, clock, timers):
        controller = FakeController(clock=clock, duration=45)
        scheduler = EternalScheduler(controller, timer_factory=timers, clock=clock)
        scheduler.start_eternal()

        assert scheduler.config.interval_seconds == 40
        assert scheduler.last_loop_duration_ms == 45000

    def test_disabled(self, controller, timers, clock):
        scheduler = EternalScheduler(
            controller, EternalConfig(adaptive_interval=False), timer_factory=timers, clock=clock,
        )
        scheduler.start_eternal()
        assert scheduler.config.interval_seconds == 30


class TestFailures:

    def test_failures_are_retried_after_backoff(self, clock, timers):
        errors = [LoopExecutionError("backend down") for _ in range(3)]
        controller = FakeController(clock=clock, outcomes=errors)
        scheduler = EternalScheduler(controller, timer_factory=timers, clock=clock)

        scheduler.start_eternal()
        for _ in range(2):
            retry = loop_timers(timers, scheduler)
            assert [t.delay for t in retry] == [5]
            retry[0].fire()

        assert scheduler.is_eternal
        assert scheduler.consecutive_failures == 3
        assert scheduler.total_failures == 3
        assert scheduler.last_error == "backend down"
        assert [t.delay for t in loop_timers(timers, scheduler)] == [5]

        loop_timers(timers, scheduler)[0].fire()
        assert scheduler.consecutive_failures == 0
        assert scheduler.total_failures == 3

    def test_failure_without_auto_restart_stops(self, clock, timers):
        controller = FakeController(clock=clock, outcomes=[RuntimeError("boom")])
        scheduler = EternalScheduler(controller, timer_factory=timers, clock=clock)

        scheduler.start_eternal({"auto_restart": False})

        assert not scheduler.is_eternal
        assert timers.pending() == []

    def test_halted_loop_counts_as_success(self, clock, timers):
        halted = RunResult(run_id="run_h", status=LoopState.HALTED,
                           reason="Halted at cycle 0: Rule violation detected: harm",
                           cycles_run=1, cycle_ids=[0])
        controller = FakeController(clock=clock, outcomes=[halted])
        scheduler = EternalScheduler(controller, timer_factory=timers, clock=clock)

        scheduler.start_eternal()

        assert scheduler.consecutive_failures == 0
        assert scheduler.total_cycles == 1
        assert [t.delay for t in loop_timers(timers, scheduler)] == [25]

    def test_busy_controller_is_not_a_failure(self, clock, timers):
        controller = FakeController(clock=clock)
        scheduler = EternalScheduler(controller, EternalConfig(auto_restart=False),
                                     timer_factory=timers, clock=clock)
        scheduler.start_eternal()
        activity = scheduler.last_activity

        # a bounded run started through the API holds the controller
        controller.is_running = True
        clock.advance(25)
        loop_timers(timers, scheduler)[0].fire()

        assert scheduler.is_eternal
        assert scheduler.total_failures == 0
        assert scheduler.last_error is None
        assert scheduler.loop_count == 1
        assert scheduler.last_activity == activity
        assert [t.delay for t in loop_timers(timers, scheduler)] == [5]

        controller.is_running = False
        loop_timers(timers, scheduler)[0].fire()
        assert scheduler.loop_count == 2


class TestWatchdog:

    def test_quiet_when_active(self, scheduler, timers, clock):
        scheduler.start_eternal()
        watchdog = scheduler._watchdog_timer
        clock.advance(30)
        watchdog.fire()

        assert scheduler.loop_count == 1
        assert scheduler.watchdog_restarts == 0
        assert scheduler._watchdog_timer is not watchdog

    def test_stale_scheduler_is_restarted(self, scheduler, controller, timers, clock):
        scheduler.start_eternal()
        pending_loop = loop_timers(timers, scheduler)[0]
        controller.is_running = True

        clock.advance(25 + 30 + 1)
        scheduler._watchdog_timer.fire()

        assert pending_loop.cancelled
        assert controller.stop_calls == 1
        assert controller.wait_calls == [10]
        assert scheduler.watchdog_restarts == 1
        assert scheduler.loop_count == 2
        assert scheduler.total_failures == 0
        assert len(loop_timers(timers, scheduler)) == 1

    def test_run_that_will_not_drain_is_retried(self, clock, timers):
        controller = FakeController(clock=clock, drains_on_stop=False)
        scheduler = EternalScheduler(controller, EternalConfig(auto_restart=False),
                                     timer_factory=timers, clock=clock)
        scheduler.start_eternal()
        controller.is_running = True

        clock.advance(25 + 30 + 1)
        scheduler._watchdog_timer.fire()

        assert scheduler.is_eternal
        assert scheduler.total_failures == 0
        assert scheduler.loop_count == 1
        assert [t.delay for t in loop_timers(timers, scheduler)] == [5]

        controller.is_running = False
        loop_timers(timers, scheduler)[0].fire()
        assert scheduler.loop_count == 2
        assert len(controller.calls) == 2

    def test_stale_callbacks_after_restart_are_ignored(self, scheduler, controller, timers, clock):
        scheduler.start_eternal()
        old_watchdog = scheduler._watchdog_timer
        clock.advance(25 + 30 + 1)
        old_watchdog.fire()
        calls = len(controller.calls)

        old_watchdog.fn()
        assert len(controller.calls) == calls
        assert scheduler.watchdog_restarts == 1

    def test_not_stale_before_start(self, scheduler):
        assert not scheduler.is_stale()


class TestConfigUpdates:

    def test_interval_change_reschedules(self, scheduler, timers):
        scheduler.start_eternal()
        old = loop_timers(timers, scheduler)[0]

        config = scheduler.update_config({"interval_seconds": 500})

        assert config.interval_seconds == 120
        assert old.cancelled
        assert [t.delay for t in loop_timers(timers, scheduler)] == [120]

    def test_other_changes_keep_timer(self, scheduler, timers):
        scheduler.start_eternal()
        old = loop_timers(timers, scheduler)[0]
        scheduler.update_config({"max_cycles_per_loop": 5})

        assert not old.cancelled
        assert scheduler.config.max_cycles_per_loop == 5

    def test_invalid_updates_rejected(self, scheduler):
        with pytest.raises(ConfigError):
            scheduler.update_config({"bogus": 1})
        with pytest.raises(ConfigError):
            scheduler.update_config({"min_interval": 200, "max_interval": 100})
        assert scheduler.config.interval_seconds == 30

    def test_update_while_idle(self, scheduler, timers):
        scheduler.update_config({"interval_seconds": 5})
        assert scheduler.config.interval_seconds == 10
        assert timers.timers == []


def test_with_real_controller(config, make_controller, timers, clock):
    config.eternal.max_cycles_per_loop = 2
    scheduler = build_scheduler(config, controller=make_controller(), timer_factory=timers, clock=clock)

    scheduler.start_eternal()

    assert scheduler.total_cycles == 2
    assert len(scheduler.controller.history) == 2
    assert scheduler.get_status()["state"] == "completed"
    scheduler.stop_eternal()


class TestWatchdogWithRealController:
    """The watchdog against a controller that enforces one active run."""

    @pytest.fixture
    def gate(self):
        return {"entered": threading.Event(), "release": threading.Event()}

    @pytest.fixture
    def blocking_scheduler(self, config, make_controller, timers, clock, gate):
        def generator(n):
            # the second loop's Generator hangs until released
            if n == 1:
                gate["entered"].set()
                gate["release"].wait(10)
            return GENERATOR_OUTPUTS[n % len(GENERATOR_OUTPUTS)]

        config.eternal.max_cycles_per_loop = 1
        config.eternal.auto_restart = False
        controller = make_controller(FakeLLMClient(generator=generator))
        return build_scheduler(config, controller=controller, timer_factory=timers, clock=clock)

    def hang_second_loop(self, scheduler, timers, clock, gate):
        scheduler.start_eternal()
        worker = threading.Thread(target=loop_timers(timers, scheduler)[0].fire, daemon=True)
        worker.start()
        assert gate["entered"].wait(5)
        assert scheduler.controller.is_running
        clock.advance(scheduler.config.interval_seconds + 31)
        return worker

    def test_stuck_run_is_replaced_once_it_returns(self, blocking_scheduler, timers, clock, gate):
        scheduler = blocking_scheduler
        scheduler.config.watchdog_drain_seconds = 0.05
        controller = scheduler.controller
        worker = self.hang_second_loop(scheduler, timers, clock, gate)

        scheduler._watchdog_timer.fire()

        assert scheduler.is_eternal
        assert scheduler.total_failures == 0
        assert scheduler.watchdog_restarts == 1
        retry = loop_timers(timers, scheduler)
        assert [t.delay for t in retry] == [5]

        gate["release"].set()
        worker.join(5)
        assert not worker.is_alive()
        assert controller.last_result.status == LoopState.STOPPED
        assert [t.delay for t in loop_timers(timers, scheduler)] == [5]

        retry[0].fire()

        assert scheduler.is_eternal
        assert scheduler.loop_count == 3
        assert scheduler.total_failures == 0
        assert controller.last_result.status == LoopState.COMPLETED
        # the abandoned cycle is never stored
        assert len(controller.history) == 2
        scheduler.stop_eternal()

    def test_restart_waits_for_the_stopped_run(self, blocking_scheduler, timers, clock, gate):
        scheduler = blocking_scheduler
        controller = scheduler.controller
        stop = controller.stop

        def stop_and_release():
            stopped = stop()
            gate["release"].set()
            return stopped

        controller.stop = stop_and_release
        worker = self.hang_second_loop(scheduler, timers, clock, gate)

        scheduler._watchdog_timer.fire()
        worker.join(5)

        assert scheduler.is_eternal
        assert scheduler.total_failures == 0
        assert scheduler.loop_count == 3
        assert controller.last_result.status == LoopState.COMPLETED
        assert len(controller.history) == 2
        assert len(loop_timers(timers, scheduler)) == 1
        scheduler.stop_eternal()
