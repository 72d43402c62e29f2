"""
Moderation telemetry.

Client side: TelemetryRecorder batches check/override events (never the raw
text) and posts them fire-and-forget. Server side: TelemetryTotals keeps the
in-memory counters behind /telemetry/moderation.
"""
import logging
import threading
import time
import uuid
from typing import Callable, List, Literal, Optional, Union

import requests
from prometheus_client import Counter
from pydantic import BaseModel, ConfigDict, Field

from .decision import Decision, normalize_action

log = logging.getLogger(__name__)

EVENTS_INGESTED = Counter("telemetry_events_total", "telemetry events ingested", ["type"])


class _Event(BaseModel):
    model_config = ConfigDict(extra="forbid")

    v: Literal[1] = 1
    ts: int = Field(default_factory=lambda: int(time.time() * 1000))
    sid: str = "anon"
    route: str = "/"


class CheckPerformed(_Event):
    type: Literal["check_performed"] = "check_performed"
    label: str
    action: Literal["allow", "warn", "block"]
    source: Literal["lite", "backend"]
    latency_ms: Optional[int] = None
    text_len: Optional[int] = None


class OverrideRequested(_Event):
    type: Literal["override_requested"] = "override_requested"
    label: str


class OverrideResult(_Event):
    type: Literal["override_result"] = "override_result"
    outcome: Literal["approved", "rejected", "error"]
    label: str


TelemetryEvent = Union[CheckPerformed, OverrideRequested, OverrideResult]
Transport = Callable[[dict], None]


class TelemetryRecorder:
    def __init__(self, endpoint: Optional[str] = None, enabled: bool = True, max_batch: int = 50,
                 flush_s: float = 1.5, session_id: Optional[str] = None, route: str = "/",
                 transport: Optional[Transport] = None, timeout: float = 5.0):
        self.endpoint = endpoint
        self.enabled = enabled
        self.max_batch = max_batch
        self.flush_s = flush_s
        self.sid = session_id or uuid.uuid4().hex
        self.route = route
        self.timeout = timeout
        self._transport = transport or self._post
        self._queue: List[TelemetryEvent] = []
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._senders: List[threading.Thread] = []
        self._http = requests.Session() if transport is None else None

    def _post(self, payload: dict) -> None:
        if not self.endpoint:
            log.debug("telemetry: no endpoint, dropping %d events", len(payload["events"]))
            return
        resp = self._http.post(self.endpoint, json=payload, timeout=self.timeout)
        resp.raise_for_status()

    def _base(self) -> dict:
        return {"sid": self.sid, "route": self.route}

    def _push(self, event: TelemetryEvent) -> None:
        if not self.enabled:
            return
        batch = None
        with self._lock:
            self._queue.append(event)
            if len(self._queue) >= self.max_batch:
                batch = self._take()
            elif self._timer is None:
                self._timer = threading.Timer(self.flush_s, self._on_timer)
                self._timer.daemon = True
                self._timer.start()
        if batch:
            sender = threading.Thread(target=self._send, args=(batch,), name="telemetry-flush", daemon=True)
            with self._lock:
                self._senders = [t for t in self._senders if t.is_alive()]
                self._senders.append(sender)
                sender.start()

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush()

    def _take(self) -> List[TelemetryEvent]:
        # caller holds self._lock
        batch, self._queue = self._queue, []
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return batch

    def _send(self, batch: List[TelemetryEvent]) -> int:
        if not batch:
            return 0
        payload = {"events": [e.model_dump() for e in batch]}
        try:
            self._transport(payload)
        except (requests.RequestException, OSError) as e:
            # fire-and-forget: a lost batch never affects moderation
            log.warning("telemetry flush of %d events failed: %s", len(batch), e)
        return len(batch)

    def flush(self) -> int:
        with self._lock:
            batch = self._take()
        return self._send(batch)

    def close(self, timeout: float = 5.0) -> None:
        """Send what is queued and wait for in-flight batches."""
        self.flush()
        with self._lock:
            senders, self._senders = self._senders, []
        for t in senders:
            t.join(timeout)

    def track_check(self, decision: Decision, latency_ms: Optional[float] = None,
                    text_len: Optional[int] = None) -> None:
        self._push(CheckPerformed(
            label=decision.label,
            action=normalize_action(decision),
            source=decision.source,
            latency_ms=None if latency_ms is None else int(round(latency_ms)),
            text_len=text_len,
            **self._base(),
        ))

    def track_override_requested(self, label: str) -> None:
        self._push(OverrideRequested(label=label, **self._base()))

    def track_override_result(self, outcome: str, label: str) -> None:
        self._push(OverrideResult(outcome=outcome, label=label, **self._base()))


_TOTAL_KEYS = ("checks", "warnings", "blocks", "overrides_requested",
               "overrides_approved", "overrides_denied", "overrides_error")
_DROPPED_KEYS = ("text", "payload")


def sanitize_events(events: list, limit: int = 100) -> list:
    clean = []
    for e in events[:limit]:
        if not isinstance(e, dict):
            continue
        clean.append({k: v for k, v in e.items() if k not in _DROPPED_KEYS})
    return clean


class TelemetryTotals:
    """In-memory counters (reset on restart)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals = dict.fromkeys(_TOTAL_KEYS, 0)

    def record(self, events: list) -> None:
        with self._lock:
            for e in events:
                kind = e.get("type")
                if kind == "check_performed":
                    self._totals["checks"] += 1
                    if e.get("action") == "warn":
                        self._totals["warnings"] += 1
                    if e.get("action") == "block":
                        self._totals["blocks"] += 1
                elif kind == "override_requested":
                    self._totals["overrides_requested"] += 1
                elif kind == "override_result":
                    outcome = e.get("outcome")
                    if outcome == "approved":
                        self._totals["overrides_approved"] += 1
                    elif outcome in ("rejected", "denied"):
                        self._totals["overrides_denied"] += 1
                    elif outcome == "error":
                        self._totals["overrides_error"] += 1
                else:
                    continue
                EVENTS_INGESTED.labels(type=kind).inc()

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._totals)

    @staticmethod
    def empty() -> dict:
        return dict.fromkeys(_TOTAL_KEYS, 0)
