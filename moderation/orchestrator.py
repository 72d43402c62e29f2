"""
Entry point for callers: lite tier first, backend on any lite failure.

    AttemptLite -> Ok  -> done (source=lite)
                -> Err -> AttemptBackend -> done (source=backend) | RemoteError

A lite attempt never blocks on a cold model: it posts a background warmup to
the worker and reports Err("cold") so the request goes to the backend.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from prometheus_client import Counter

from .artifacts import ArtifactCache, HttpArtifactFetcher
from .backend import BackendClient
from .config import ModelConfig, Settings
from .decision import Decision, safe_decision
from .errors import Err, InferenceError, LiteTimeoutError, ModerationError, Ok, RemoteError, Result
from .model_loader import make_lite_loader
from .telemetry import TelemetryRecorder
from .warmup import WarmupState, WarmupStateMachine
from .worker import LiteClient, ModerationWorker

log = logging.getLogger(__name__)

CHECKS = Counter("moderation_checks_total", "decisions returned to callers", ["action", "source"])
LITE_FALLBACKS = Counter("lite_fallbacks_total", "lite attempts that fell back to the backend", ["kind"])
REVIEWS = Counter("review_requests_total", "manual review requests", ["outcome"])


class FallbackOrchestrator:
    def __init__(self, settings: Settings, backend: BackendClient,
                 lite_config: Optional[ModelConfig] = None,
                 lite: Optional[LiteClient] = None,
                 warmup: Optional[WarmupStateMachine] = None,
                 telemetry: Optional[TelemetryRecorder] = None,
                 clock: Callable[[], float] = time.perf_counter):
        self.settings = settings
        self.backend = backend
        self.lite_config = lite_config
        self.lite = lite
        self.warmup = warmup
        self.telemetry = telemetry
        self._clock = clock

    # -- lite -----------------------------------------------------------
    def _attempt_lite(self, text: str) -> Result:
        if not self.settings.flags.lite_enabled or self.lite is None or self.lite_config is None:
            return Err("disabled", "lite tier disabled")
        if self.warmup is not None:
            if self.warmup.gave_up:
                return Err("gave_up", self.warmup.last_error or "lite warmup gave up")
            state = self.warmup.state
            if state is WarmupState.COLD:
                if self.warmup.can_attempt():
                    self.lite.warmup_in_background()
                return Err("cold", "lite model not loaded yet")
            if state is WarmupState.LOADING:
                return Err("loading", "lite model still loading")
        try:
            return Ok(self.lite.infer(text, timeout=self.settings.timeouts.inference_s))
        except LiteTimeoutError as e:
            return Err("timeout", str(e))
        except InferenceError as e:
            return Err("inference", str(e))
        except ModerationError as e:
            return Err(e.kind, str(e))

    # -- public ---------------------------------------------------------
    def check(self, text: str) -> Decision:
        text = (text or "").strip()
        if not text:
            return safe_decision(self.lite_config or self.settings.backend_config(), "empty input", source="lite")

        t0 = self._clock()
        outcome = self._attempt_lite(text)
        if isinstance(outcome, Ok):
            return self._finish(outcome.value.stamped("lite"), t0, text)

        LITE_FALLBACKS.labels(kind=outcome.kind).inc()
        log.info("lite unavailable (%s): %s; using backend", outcome.kind, outcome.message)
        t0 = self._clock()
        decision = self.backend.check(text)
        return self._finish(decision.stamped("backend"), t0, text)

    def _finish(self, decision: Decision, t0: float, text: str) -> Decision:
        CHECKS.labels(action=decision.action, source=decision.source).inc()
        if self.telemetry is not None and self.settings.flags.telemetry_enabled:
            self.telemetry.track_check(decision, latency_ms=(self._clock() - t0) * 1000.0, text_len=len(text))
        return decision

    def request_review(self, text: str, prior: Decision) -> Decision:
        """Ask the backend to re-judge a warn/block decision; its answer supersedes `prior`."""
        if not self.settings.flags.override_enabled:
            log.info("review requested but overrides are disabled")
            return prior
        if prior.action not in ("warn", "block"):
            return prior
        track = self.telemetry if (self.telemetry is not None and self.settings.flags.telemetry_enabled) else None
        if track:
            track.track_override_requested(prior.label)
        try:
            decision = self.backend.check(text.strip(), client_decision=prior).stamped("backend")
        except RemoteError:
            REVIEWS.labels(outcome="error").inc()
            if track:
                track.track_override_result("error", prior.label)
            raise
        outcome = "approved" if decision.action != "block" else "rejected"
        REVIEWS.labels(outcome=outcome).inc()
        if track:
            track.track_override_result(outcome, decision.label)
        return decision


@dataclass
class LiteTier:
    worker: ModerationWorker
    client: LiteClient
    warmup: WarmupStateMachine
    cache: ArtifactCache

    def close(self) -> None:
        self.client.close()
        self.worker.stop()


class LiteSlot:
    """Single lazily built LiteTier shared by every caller that holds the slot."""

    def __init__(self, factory: Callable[[], LiteTier]):
        self._factory = factory
        self._lock = threading.Lock()
        self._tier: Optional[LiteTier] = None

    def get(self) -> LiteTier:
        with self._lock:
            if self._tier is None:
                self._tier = self._factory()
            return self._tier

    @property
    def built(self) -> bool:
        with self._lock:
            return self._tier is not None

    def close(self) -> None:
        with self._lock:
            tier, self._tier = self._tier, None
        if tier is not None:
            tier.close()


def build_lite_tier(settings: Settings, config: ModelConfig) -> LiteTier:
    fetcher = HttpArtifactFetcher(base_url=settings.lite.artifact_base_url, timeout=settings.timeouts.artifact_s)
    cache = ArtifactCache(fetcher, cache_dir=settings.lite.cache_dir)
    warmup = WarmupStateMachine(
        make_lite_loader(config, cache, settings.lite),
        timeout_s=settings.timeouts.warmup_s,
        max_failures=settings.warmup.max_failures,
        backoff_base_s=settings.warmup.backoff_base_s,
        backoff_max_s=settings.warmup.backoff_max_s,
    )
    worker = ModerationWorker(config, warmup, fetcher=fetcher,
                              max_inference_errors=settings.warmup.max_inference_errors)
    client = LiteClient(worker, warmup,
                        inference_timeout_s=settings.timeouts.inference_s,
                        warmup_timeout_s=settings.timeouts.warmup_s)
    return LiteTier(worker, client, warmup, cache)


def build_orchestrator(settings: Settings, slot: Optional[LiteSlot] = None,
                       telemetry: Optional[TelemetryRecorder] = None) -> FallbackOrchestrator:
    lite_config = settings.lite_config()
    backend = BackendClient(settings.backend.check_url, timeout=settings.timeouts.backend_s,
                            api_key=settings.backend.api_key)
    if telemetry is None and settings.flags.telemetry_enabled:
        telemetry = TelemetryRecorder(endpoint=settings.telemetry.endpoint,
                                      max_batch=settings.telemetry.max_batch,
                                      flush_s=settings.telemetry.flush_s)
    tier = None
    if settings.flags.lite_enabled and lite_config is not None:
        slot = slot or LiteSlot(lambda: build_lite_tier(settings, lite_config))
        tier = slot.get()
    elif settings.flags.lite_enabled:
        log.warning("unknown lite model id %r; lite tier disabled", settings.lite.model_id)
    return FallbackOrchestrator(
        settings,
        backend,
        lite_config=lite_config,
        lite=tier.client if tier else None,
        warmup=tier.warmup if tier else None,
        telemetry=telemetry,
    )
