"""
Unlock process controller: composes time sync, latency probe, schedule, wait
and the dispatch/retry loop for one run mode. Events (log lines, state
changes, countdown) go to an EventSink that the shell drains.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from dispatcher import FinalOutcome, RequestDispatcher, RetryScheduler, build_session
from models import (
    FinalStatus, ModeStatus, OutcomeResult, RunMode, RunState, UnlockSettings, WSEvent,
)
from timing import (
    AuthoritativeTime, CancellableWaiter, LatencyEstimate, LatencyProbe,
    PastDeadlineError, ScheduleRule, ScheduleWindow, TimeSource, TimeUnavailable,
    WaitResult, compute_schedule, format_ms,
)

logger = logging.getLogger("blunlock")

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class EventSink:
    """Queue of shell-facing events; every log line is mirrored to ``logging``."""

    def __init__(self, log: logging.Logger | None = None):
        self._events: queue.Queue = queue.Queue()
        self._logger = log or logger

    def emit(self, event_type: str, data: dict | None = None):
        event = WSEvent(type=event_type, data=data or {}, timestamp=time.time())
        self._events.put(event.model_dump())

    def log(self, message: str, level: str = "info", mode: RunMode | None = None):
        tag = f"[{mode.value}] " if mode else ""
        self._logger.log(_LEVELS.get(level, logging.INFO), "%s%s", tag, message)
        data = {"message": message, "level": level}
        if mode:
            data["mode"] = mode.value
        self.emit("log", data)

    def mode_state_changed(self, mode: RunMode, running: bool, state: RunState):
        self.emit("state", {"mode": mode.value, "running": running, "phase": state.value})

    def empty(self) -> bool:
        return self._events.empty()

    def get_events(self) -> list[dict]:
        events = []
        while not self._events.empty():
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                break
        return events


class ProcessController:
    """Start/stop state holder for one run mode.

    One instance per mode; each owns a single-worker executor, so at most one
    scheduling/dispatch sequence is in flight per mode. ``start`` while running
    is a no-op.
    """

    def __init__(
        self,
        mode: RunMode,
        settings: UnlockSettings | None = None,
        sink: EventSink | None = None,
        time_source: TimeSource | None = None,
        probe: LatencyProbe | None = None,
        waiter: CancellableWaiter | None = None,
        dispatcher: RequestDispatcher | None = None,
        retry_sleep=time.sleep,
    ):
        self.mode = RunMode(mode)
        self.settings = settings or UnlockSettings()
        self.sink = sink or EventSink()
        s = self.settings

        self.time_source = time_source or TimeSource(
            s.ntp_servers, timeout=s.ntp_timeout, log=self._log,
        )
        self.probe = probe or LatencyProbe(default_ms=s.default_latency_ms, log=self._log)
        self.waiter = waiter or CancellableWaiter(poll_interval=s.poll_interval, log=self._log)
        self.dispatcher = dispatcher or RequestDispatcher(
            session=build_session(s.user_agent),
            api_url=s.api_url,
            user_agent=s.user_agent,
            timeout=s.request_timeout,
            order=s.classification_order,
            log=self._log,
        )
        self.retry = RetryScheduler(
            self.dispatcher, log=self._log, sleep=retry_sleep, on_attempt=self._on_attempt,
        )

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"blunlock-{self.mode.value}")
        self._future: Optional[Future] = None
        self._cancel = threading.Event()
        self._running = False
        self._state = RunState.IDLE
        self._attempts = 0
        self._window: Optional[ScheduleWindow] = None
        self._last: Optional[FinalOutcome] = None
        self._last_countdown: Optional[int] = None

    # ── State ──

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def label(self) -> str:
        return self.mode.value.capitalize()

    def _log(self, msg: str, level: str = "info"):
        self.sink.log(msg, level, mode=self.mode)

    def _set_state(self, state: RunState):
        self._state = state
        self.sink.mode_state_changed(self.mode, self._running, state)

    def _countdown(self, remaining: float):
        whole = int(remaining)
        if whole != self._last_countdown:
            self._last_countdown = whole
            self.sink.emit("countdown", {
                "mode": self.mode.value,
                "send_ms": self._window.send_ms if self._window else None,
                "remaining": remaining,
            })

    def _on_attempt(self, n: int, outcome):
        self._attempts = n

    def status(self) -> ModeStatus:
        last = None
        if self._last:
            lo = self._last.last
            last = OutcomeResult(
                status=self._last.status,
                attempts=self._last.attempts,
                reason=lo.reason if lo else None,
                message=lo.message if lo else "",
            )
        return ModeStatus(
            mode=self.mode,
            state=self._state,
            running=self._running,
            attempts=self._attempts,
            send_ms=self._window.send_ms if self._window else None,
            last_outcome=last,
        )

    # ── Shell signals ──

    def start(self, credential: str) -> bool:
        if not credential or not credential.strip():
            raise ValueError("credential must not be empty")
        if self._running:
            return False

        self._running = True
        self._cancel = threading.Event()
        self._attempts = 0
        self._window = None
        self._last = None
        self._last_countdown = None
        if self.mode == RunMode.SCHEDULED:
            self._set_state(RunState.WAITING)
            self._log("Scheduled process started. Calculating precise send time...")
        else:
            self._set_state(RunState.DISPATCHING)
            self._log("Manual process started.")
        self._future = self._executor.submit(self._run, credential.strip(), self._cancel)
        return True

    def stop(self) -> bool:
        if not self._running:
            return False
        self._cancel.set()
        self._log(f"{self.label} process stop requested by user.", "warning")
        return True

    def join(self, timeout: float | None = None) -> bool:
        """Block until the current run is over. Returns False on timeout."""
        if self._future is None:
            return True
        try:
            self._future.result(timeout=timeout)
        except FutureTimeout:
            return False
        return True

    def shutdown(self):
        self._cancel.set()
        self._executor.shutdown(wait=False)

    # ── Scheduling ──

    def rule(self) -> ScheduleRule:
        s = self.settings
        return ScheduleRule(time_of_day=s.target_time, zone=s.target_zone, roll=s.roll)

    def plan(
        self, cancel: threading.Event | None = None,
    ) -> tuple[AuthoritativeTime, LatencyEstimate, ScheduleWindow]:
        """Time sync + latency probe + schedule. Raises TimeUnavailable/PastDeadlineError."""
        s = self.settings
        authoritative = self.time_source.fetch(display_zone=s.target_zone)
        latency = self.probe.estimate(s.api_host, s.ping_count, s.ping_timeout, cancel)
        try:
            window = compute_schedule(authoritative, latency, self.rule())
        except PastDeadlineError as e:
            self._log_timing(e.arrival_ms, e.send_ms)
            raise
        self._log_timing(window.arrival_ms, window.send_ms)
        self.sink.emit("schedule", {
            "mode": self.mode.value,
            "source": authoritative.source,
            "authoritative_ms": authoritative.epoch_ms,
            "latency_ms": latency.ms,
            "latency_samples": latency.samples,
            "arrival_ms": window.arrival_ms,
            "send_ms": window.send_ms,
        })
        return authoritative, latency, window

    def _log_timing(self, arrival_ms: int | None, send_ms: int):
        zone = self.settings.target_zone
        self._log("--- Timing Calculation ---")
        if arrival_ms is not None:
            self._log(f"Target Arrival Time: {format_ms(arrival_ms, zone)}")
        self._log(f"Calculated Send Time: {format_ms(send_ms, zone)}")

    def _wait_for_send_time(self, cancel: threading.Event) -> bool:
        authoritative, _, window = self.plan(cancel)
        self._window = window
        if cancel.is_set():
            return False
        result = self.waiter.wait_until(window.send_ms, authoritative, cancel, on_countdown=self._countdown)
        return result == WaitResult.COMPLETED

    # ── Worker ──

    def _run(self, credential: str, cancel: threading.Event):
        try:
            if self.mode == RunMode.SCHEDULED and not self._wait_for_send_time(cancel):
                self._log("Process halted due to cancellation.", "warning")
                return
            if cancel.is_set():
                return

            s = self.settings
            self._set_state(RunState.DISPATCHING)
            self._log(f"--- [{self.label}] Sending Unlock Request ---")
            final = self.retry.run(
                credential, cancel,
                delay=s.retry_delay,
                policy=s.policy_for(self.mode),
                max_attempts=s.max_attempts,
            )
            self._finish(final)
        except TimeUnavailable:
            self._log("Process halted: no time authority reachable.", "error")
        except PastDeadlineError as e:
            self._log(f"❌ ERROR: Calculated send time is in the past ({e}). Check system clock or network.", "error")
        except Exception as e:
            self._log(f"Unexpected error: {e}", "error")
        finally:
            self._set_state(RunState.STOPPED)
            self._log(f"{self.label} process stopped by user or has completed.")
            self._state = RunState.IDLE
            self.sink.mode_state_changed(self.mode, False, RunState.IDLE)
            self._running = False

    def _finish(self, final: FinalOutcome):
        self._last = final
        if final.status == FinalStatus.SUCCESS:
            self._log(f"--- [{self.label}] Process Finished: SUCCESS! ---")
        elif final.status == FinalStatus.CANCELLED:
            self._log(f"--- [{self.label}] Process Finished: CANCELLED after {final.attempts} attempts ---", "warning")
        else:
            self._log(f"--- [{self.label}] Process Finished: FAILED. See logs for details. ---", "error")
        last = final.last
        self.sink.emit("outcome", {
            "mode": self.mode.value,
            "status": final.status.value,
            "attempts": final.attempts,
            "reason": last.reason.value if last and last.reason else None,
        })
