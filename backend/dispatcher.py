"""
Unlock request dispatch, response classification and the retry loop.

The API answers every request with a JSON envelope ``{code, msg, data}`` whose
meaning depends on a combination of HTTP status, application code, message
text and ``data.apply_result``. ``classify_response`` reduces that to one of
three outcome kinds that drive the retry decision.
"""

import json
import socket
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import requests
import requests.adapters

from models import (
    AppRule, DEFAULT_ORDER, FailureReason, FinalStatus, OutcomeKind, RetryPolicy,
)

LogFn = Callable[[str, str], None]

API_URL = "https://sgp-api.buy.mi.com/bbs/api/global/apply/bl-auth"
USER_AGENT = "okhttp/4.12.0"
REQUEST_TIMEOUT = 10.0
RETRY_DELAY = 0.25

NOT_ELIGIBLE_CODE = 20036
AUTH_KEYWORDS = ("login", "cookie", "auth")
APPLY_GRANTED = 1
APPLY_NOT_GRANTED = 3


class OptimizedHTTPAdapter(requests.adapters.HTTPAdapter):
    """HTTP adapter that applies TCP options at socket level.

    - TCP_NODELAY: disable Nagle so the small POST leaves immediately
    - SO_KEEPALIVE: OS-level keepalive on the pooled connection
    - TCP_QUICKACK (Linux): no delayed ACKs
    - TCP_SLOW_START_AFTER_IDLE=0 (Linux): keep cwnd after idle periods
    """

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        if hasattr(self.poolmanager, 'connection_pool_kw'):
            opts = list(self.poolmanager.connection_pool_kw.get('socket_options', []))
            opts.append((socket.IPPROTO_TCP, socket.TCP_NODELAY, 1))
            opts.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
            if sys.platform == "linux":
                opts.append((socket.IPPROTO_TCP, 12, 1))  # TCP_QUICKACK
                opts.append((socket.IPPROTO_TCP, 23, 0))  # TCP_SLOW_START_AFTER_IDLE=0
            self.poolmanager.connection_pool_kw['socket_options'] = opts


def build_session(user_agent: str = USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    adapter = OptimizedHTTPAdapter(pool_connections=1, pool_maxsize=2, max_retries=0)
    session.mount("https://", adapter)
    return session


@dataclass(frozen=True)
class AttemptOutcome:
    kind: OutcomeKind
    reason: Optional[FailureReason] = None
    status_code: Optional[int] = None
    code: Optional[int] = None
    message: str = ""
    duration_ms: int = 0
    body: str = ""

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_terminal(self) -> bool:
        return self.kind == OutcomeKind.TERMINAL


@dataclass(frozen=True)
class FinalOutcome:
    status: FinalStatus
    attempts: int
    last: Optional[AttemptOutcome] = None


def _retryable(reason: FailureReason, **kw) -> AttemptOutcome:
    return AttemptOutcome(kind=OutcomeKind.RETRYABLE, reason=reason, **kw)


def _terminal(reason: FailureReason, **kw) -> AttemptOutcome:
    return AttemptOutcome(kind=OutcomeKind.TERMINAL, reason=reason, **kw)


def _as_int(value: Any, default: int = -1) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def classify_response(
    status_code: int,
    body: str,
    order: Iterable[AppRule] = DEFAULT_ORDER,
) -> AttemptOutcome:
    """Decision table over (HTTP status, JSON body); first matching rule wins.

    Transport failures never reach here, the dispatcher maps them directly.
    """
    if not 200 <= status_code < 300:
        return _retryable(FailureReason.HTTP_STATUS, status_code=status_code, body=body)

    try:
        payload = json.loads(body)
    except ValueError:
        return _retryable(FailureReason.PARSE_ERROR, status_code=status_code, body=body)
    if not isinstance(payload, dict):
        return _retryable(FailureReason.PARSE_ERROR, status_code=status_code, body=body)

    code = _as_int(payload.get("code"))
    msg = payload.get("msg")
    msg = msg if isinstance(msg, str) else ""
    common = {"status_code": status_code, "code": code, "message": msg, "body": body}

    for rule in order:
        rule = AppRule(rule)
        if rule == AppRule.NOT_ELIGIBLE and code == NOT_ELIGIBLE_CODE:
            return _terminal(FailureReason.NOT_ELIGIBLE, **common)
        if rule == AppRule.API_ERROR and code != 0:
            return _retryable(FailureReason.API_ERROR, **common)
        if rule == AppRule.AUTH_INVALID and any(k in msg.lower() for k in AUTH_KEYWORDS):
            return _terminal(FailureReason.AUTH_INVALID, **common)

    data = payload.get("data")
    if isinstance(data, dict):
        apply_result = _as_int(data.get("apply_result"))
        if apply_result == APPLY_GRANTED:
            return AttemptOutcome(kind=OutcomeKind.SUCCESS, **common)
        if apply_result == APPLY_NOT_GRANTED:
            return _retryable(FailureReason.NOT_GRANTED, **common)
    return _retryable(FailureReason.UNKNOWN, **common)


def _noop_log(message: str, level: str = "info"):
    pass


class RequestDispatcher:
    """Sends one unlock request per call and classifies the answer."""

    def __init__(
        self,
        session: requests.Session | None = None,
        api_url: str = API_URL,
        user_agent: str = USER_AGENT,
        timeout: float = REQUEST_TIMEOUT,
        order: Iterable[AppRule] = DEFAULT_ORDER,
        log: LogFn = _noop_log,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.session = session or build_session(user_agent)
        self.api_url = api_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.order = tuple(AppRule(r) for r in order)
        self._log = log
        self._clock = clock

    def _build_request(self, credential: str, is_retry: bool) -> requests.PreparedRequest:
        req = requests.Request(
            method="POST", url=self.api_url,
            json={"is_retry": is_retry},
            headers={"User-Agent": self.user_agent, "Cookie": credential},
        )
        return self.session.prepare_request(req)

    def dispatch(self, credential: str, is_retry: bool = False) -> AttemptOutcome:
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self._log(f"[{stamp}] Sending request...", "info")
        t0 = self._clock()
        try:
            prepped = self._build_request(credential, is_retry)
            resp = self.session.send(prepped, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            ms = int((self._clock() - t0) * 1000)
            self._log(f"❌ CONNECTION EXCEPTION. (Duration: {ms} ms). {e}", "error")
            return _retryable(FailureReason.TRANSPORT, message=str(e), duration_ms=ms)

        ms = int((self._clock() - t0) * 1000)
        outcome = classify_response(resp.status_code, resp.text, self.order)
        outcome = replace(outcome, duration_ms=ms)
        self._log_outcome(outcome)
        return outcome

    def _log_outcome(self, o: AttemptOutcome):
        ms = o.duration_ms
        r = o.reason
        if o.is_success:
            self._log(f"✅ SUCCESS! (Duration: {ms} ms). Permission granted.", "info")
        elif r == FailureReason.HTTP_STATUS:
            self._log(f"❌ NETWORK ERROR. (Duration: {ms} ms). HTTP Code: {o.status_code}", "error")
        elif r == FailureReason.PARSE_ERROR:
            self._log(f"❌ JSON EXCEPTION. (Duration: {ms} ms). Failed to parse server response.", "error")
        elif r == FailureReason.NOT_ELIGIBLE:
            self._log(
                f"❌ ACCOUNT NOT ELIGIBLE. (Duration: {ms} ms). "
                "Reason: Account is likely less than 30 days old.", "error",
            )
        elif r == FailureReason.AUTH_INVALID:
            self._log(f"❌ AUTH ERROR - Invalid Cookie? (Duration: {ms} ms). Message: {o.message}", "error")
        elif r == FailureReason.API_ERROR:
            self._log(
                f"❌ API ERROR - Code: {o.code} ({o.message or 'No message'}). (Duration: {ms} ms).", "error",
            )
        elif r == FailureReason.NOT_GRANTED:
            self._log(f"❌ FAILED - Permission not granted. (Duration: {ms} ms). Result code: 3", "warning")
        else:
            self._log(f"❓ UNKNOWN RESULT. (Duration: {ms} ms). Response: {o.body}", "warning")


class RetryScheduler:
    """Repeats dispatches until success, a terminal failure or cancellation."""

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        log: LogFn = _noop_log,
        sleep: Callable[[float], None] = time.sleep,
        on_attempt: Callable[[int, AttemptOutcome], None] | None = None,
    ):
        self.dispatcher = dispatcher
        self._log = log
        self._sleep = sleep
        self._on_attempt = on_attempt

    def run(
        self,
        credential: str,
        cancel: threading.Event,
        delay: float = RETRY_DELAY,
        policy: RetryPolicy = RetryPolicy.SINGLE_ATTEMPT,
        max_attempts: int | None = None,
    ) -> FinalOutcome:
        attempts = 0
        last: Optional[AttemptOutcome] = None

        while not cancel.is_set():
            outcome = self.dispatcher.dispatch(credential, is_retry=attempts > 0)
            attempts += 1
            last = outcome
            if self._on_attempt:
                self._on_attempt(attempts, outcome)

            if outcome.is_success:
                return FinalOutcome(FinalStatus.SUCCESS, attempts, outcome)
            if outcome.is_terminal:
                return FinalOutcome(FinalStatus.TERMINAL_FAILURE, attempts, outcome)
            if policy == RetryPolicy.SINGLE_ATTEMPT:
                return FinalOutcome(FinalStatus.EXHAUSTED, attempts, outcome)
            if max_attempts is not None and attempts >= max_attempts:
                self._log(f"Giving up after {attempts} attempts.", "warning")
                return FinalOutcome(FinalStatus.EXHAUSTED, attempts, outcome)

            self._sleep(delay)

        self._log(f"Retry loop cancelled after {attempts} attempts.", "warning")
        return FinalOutcome(FinalStatus.CANCELLED, attempts, last)
