"""
Time synchronization and latency-compensated scheduling.

The local clock is never trusted for the deadline: an authoritative NTP time is
fetched once per cycle and advanced with the local *monotonic* clock from the
moment it arrived. The send instant is the arrival deadline minus the measured
latency to the API host.
"""

import socket
import time
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

import ntplib

from models import RollRule

LogFn = Callable[[str, str], None]

NTP_SERVERS = ["time.google.com", "time.cloudflare.com", "pool.ntp.org", "ntp.aliyun.com"]
NTP_TIMEOUT = 5.0
PING_COUNT = 3
PING_TIMEOUT = 2.0
DEFAULT_LATENCY_MS = 180
WAIT_POLL_INTERVAL = 0.1
DISPLAY_ZONE = "Asia/Shanghai"


class NetworkError(OSError):
    """A time query or reachability check failed at the network level."""


class TimeUnavailable(RuntimeError):
    """Every time authority failed; the scheduling cycle cannot proceed."""


class PastDeadlineError(ValueError):
    """The computed send instant is not in the future of the authoritative time."""

    def __init__(self, send_ms: int, now_ms: int, arrival_ms: int | None = None):
        self.send_ms = send_ms
        self.now_ms = now_ms
        self.arrival_ms = arrival_ms
        super().__init__(f"send instant {send_ms} is {now_ms - send_ms}ms in the past")


def _noop_log(message: str, level: str = "info"):
    pass


def format_ms(epoch_ms: int, zone: str = DISPLAY_ZONE) -> str:
    """Epoch ms -> 'yyyy-MM-dd HH:mm:ss.SSS TZ' in the given zone."""
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=ZoneInfo(zone))
    return f"{dt:%Y-%m-%d %H:%M:%S}.{epoch_ms % 1000:03d} {dt.tzname()}"


# ── Data ──

@dataclass(frozen=True)
class AuthoritativeTime:
    epoch_ms: int
    source: str
    monotonic: float  # time.monotonic() when the answer was received


@dataclass(frozen=True)
class LatencyEstimate:
    ms: int
    samples: int
    fallback: bool = False


@dataclass(frozen=True)
class ScheduleWindow:
    arrival_ms: int
    send_ms: int
    latency_ms: int


@dataclass(frozen=True)
class ScheduleRule:
    time_of_day: str = "00:00:00"
    zone: str = DISPLAY_ZONE
    roll: RollRule = RollRule.NEXT_OCCURRENCE


class WaitResult(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ── Transports ──

class TimeTransport(Protocol):
    def query_time(self, server: str, timeout: float) -> int: ...


class ReachabilityTransport(Protocol):
    def is_reachable(self, host: str, timeout: float) -> bool: ...


class NtplibTransport:
    """NTP v3 query; returns the server transmit timestamp in epoch ms."""

    def __init__(self, client: Optional[ntplib.NTPClient] = None):
        self.client = client or ntplib.NTPClient()

    def query_time(self, server: str, timeout: float) -> int:
        try:
            resp = self.client.request(server, version=3, timeout=timeout)
        except (ntplib.NTPException, OSError) as e:
            raise NetworkError(str(e)) from e
        return int(resp.tx_time * 1000)


class TcpReachability:
    """Reachability = a TCP handshake with the host completes within the timeout."""

    def __init__(self, port: int = 443):
        self.port = port

    def is_reachable(self, host: str, timeout: float) -> bool:
        try:
            with socket.create_connection((host, self.port), timeout=timeout) as sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except socket.timeout:
            return False
        except OSError as e:
            raise NetworkError(str(e)) from e
        return True


# ── TimeSource ──

class TimeSource:
    """Ordered fallback over time authorities. No caching between cycles."""

    def __init__(
        self,
        servers: list[str] | None = None,
        timeout: float = NTP_TIMEOUT,
        transport: TimeTransport | None = None,
        log: LogFn = _noop_log,
        monotonic: Callable[[], float] = time.monotonic,
        display_zone: str = DISPLAY_ZONE,
    ):
        self.servers = list(servers or NTP_SERVERS)
        self.timeout = timeout
        self.transport = transport or NtplibTransport()
        self._log = log
        self._monotonic = monotonic
        self.display_zone = display_zone

    def fetch(self, servers: list[str] | None = None, display_zone: str | None = None) -> AuthoritativeTime:
        zone = display_zone or self.display_zone
        for server in (servers or self.servers):
            self._log(f"Querying NTP server: {server}", "info")
            try:
                epoch_ms = self.transport.query_time(server, self.timeout)
            except NetworkError as e:
                self._log(f"❌ Failed to get time from {server}: {e}", "warning")
                continue
            received = self._monotonic()
            self._log(f"✅ NTP time synchronized from {server}", "info")
            self._log(f"Synchronized Time: {format_ms(epoch_ms, zone)}", "info")
            return AuthoritativeTime(epoch_ms=epoch_ms, source=server, monotonic=received)

        self._log("❌ All NTP servers failed. Aborting scheduled process.", "error")
        raise TimeUnavailable("no time authority answered")


# ── LatencyProbe ──

class LatencyProbe:
    """Average reachability-check duration to the API host.

    The round-trip duration is used as-is for the one-way budget. This is a
    known approximation: it sends slightly early rather than late.
    """

    def __init__(
        self,
        transport: ReachabilityTransport | None = None,
        default_ms: int = DEFAULT_LATENCY_MS,
        log: LogFn = _noop_log,
        clock: Callable[[], int] = time.perf_counter_ns,
    ):
        self.transport = transport or TcpReachability()
        self.default_ms = default_ms
        self._log = log
        self._clock = clock

    def estimate(
        self,
        host: str,
        sample_count: int = PING_COUNT,
        timeout: float = PING_TIMEOUT,
        cancel: threading.Event | None = None,
    ) -> LatencyEstimate:
        self._log(f"Pinging {host} {sample_count} times...", "info")
        total = 0
        ok = 0
        for i in range(sample_count):
            if cancel is not None and cancel.is_set():
                break
            t0 = self._clock()
            try:
                reachable = self.transport.is_reachable(host, timeout)
            except OSError as e:
                self._log(f"Ping {i + 1}: Failed ({e})", "warning")
                continue
            duration = (self._clock() - t0) // 1_000_000
            if not reachable:
                self._log(f"Ping {i + 1}: Timed out after {duration} ms", "warning")
                continue
            self._log(f"Ping {i + 1}: {duration} ms", "info")
            total += duration
            ok += 1

        if ok == 0:
            self._log(f"All pings failed. Using default latency: {self.default_ms} ms", "warning")
            return LatencyEstimate(ms=self.default_ms, samples=0, fallback=True)
        avg = total // ok
        self._log(f"Average Ping: {avg} ms", "info")
        return LatencyEstimate(ms=avg, samples=ok)


# ── TargetTimeCalculator ──

def next_arrival_ms(now_ms: int, rule: ScheduleRule) -> int:
    """First instant strictly after ``now_ms`` matching the rule, in epoch ms."""
    tz = ZoneInfo(rule.zone)
    h, m, s = map(int, rule.time_of_day.split(":"))
    local_now = datetime.fromtimestamp(now_ms / 1000, tz=tz)
    day = local_now.date()
    if rule.roll == RollRule.NEXT_DAY:
        day += timedelta(days=1)
    while True:
        target = datetime(day.year, day.month, day.day, h, m, s, tzinfo=tz)
        arrival_ms = round(target.timestamp() * 1000)
        if arrival_ms > now_ms:
            return arrival_ms
        day += timedelta(days=1)


def compute_schedule(
    authoritative: AuthoritativeTime,
    latency: LatencyEstimate,
    rule: ScheduleRule,
) -> ScheduleWindow:
    arrival_ms = next_arrival_ms(authoritative.epoch_ms, rule)
    send_ms = arrival_ms - latency.ms
    if send_ms <= authoritative.epoch_ms:
        raise PastDeadlineError(send_ms, authoritative.epoch_ms, arrival_ms)
    return ScheduleWindow(arrival_ms=arrival_ms, send_ms=send_ms, latency_ms=latency.ms)


# ── CancellableWaiter ──

class CancellableWaiter:
    """Blocks until the send instant, polling the cancel flag every interval."""

    def __init__(
        self,
        poll_interval: float = WAIT_POLL_INTERVAL,
        log: LogFn = _noop_log,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_countdown: Callable[[float], None] | None = None,
    ):
        self.poll_interval = poll_interval
        self._log = log
        self._clock = clock
        self._sleep = sleep
        self._on_countdown = on_countdown

    def wait_until(
        self,
        send_ms: int,
        authoritative: AuthoritativeTime,
        cancel: threading.Event,
        on_countdown: Callable[[float], None] | None = None,
    ) -> WaitResult:
        on_countdown = on_countdown or self._on_countdown
        # Deadline on the monotonic clock, anchored where the authoritative time arrived.
        deadline = authoritative.monotonic + (send_ms - authoritative.epoch_ms) / 1000
        remaining = deadline - self._clock()
        self._log(f"Waiting for {max(remaining, 0):.3f} seconds to reach send time...", "info")

        while True:
            if cancel.is_set():
                self._log("Wait cancelled by user.", "warning")
                return WaitResult.CANCELLED
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            if on_countdown:
                on_countdown(remaining)
            self._sleep(min(self.poll_interval, remaining))

        self._log("Target time reached! Starting unlock attempt.", "info")
        return WaitResult.COMPLETED
