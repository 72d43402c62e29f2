"""
Isolated inference worker and its request/response client.

The worker owns one thread and an inbox queue. Callers talk to it only with
dict messages:

    {"type": "init", "files": [{"file", "url"}], "baseUrl": ..., "requestId"?}
        -> status* then ready | error{message}
    {"type": "infer", "text": ..., "requestId": n, "expiresAt"?}
        -> status* then result{decision, requestId} | error{message, kind, requestId}

LiteClient correlates replies through a pending-request table keyed by a
monotonically increasing request id and always removes its entry, whether the
request completed, failed or timed out. Infer requests carry their
monotonic deadline so the worker can drop the ones nobody waits for anymore.
"""
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from .config import ModelConfig
from .decision import Decision, decide, safe_decision
from .errors import InferenceError, LiteTimeoutError, ModerationError, error_from_kind
from .warmup import WarmupStateMachine

log = logging.getLogger(__name__)

Listener = Callable[[dict], None]


def _rid(request_id) -> dict:
    return {} if request_id is None else {"requestId": request_id}


class ModerationWorker:
    def __init__(self, config: ModelConfig, warmup: WarmupStateMachine, fetcher=None,
                 max_inference_errors: int = 3, name: str = "moderation-worker"):
        self.config = config
        self.warmup = warmup
        self.fetcher = fetcher
        self.max_inference_errors = max_inference_errors
        self.name = name
        self._inbox: "queue.Queue[Optional[dict]]" = queue.Queue()
        self._listeners = []
        self._listeners_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._inference_errors = 0
        self._errors_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._thread_lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._thread_lock:
            thread, self._thread = self._thread, None
        if thread is not None and thread.is_alive():
            self._inbox.put(None)
            thread.join(timeout)

    def post_message(self, msg: dict) -> None:
        self.start()
        self._inbox.put(dict(msg))

    def add_listener(self, fn: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(fn)

    def remove_listener(self, fn: Listener) -> None:
        with self._listeners_lock:
            if fn in self._listeners:
                self._listeners.remove(fn)

    def _emit(self, type_: str, **payload) -> None:
        msg = {"type": type_, **payload}
        with self._listeners_lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(msg)
            except Exception:
                log.exception("worker listener failed on %s message", type_)

    def _run(self) -> None:
        while True:
            msg = self._inbox.get()
            if msg is None:
                break
            try:
                self._handle(msg)
            except Exception as e:
                # keep the loop alive; the requester still gets a reply
                log.exception("worker failed handling %s", msg.get("type"))
                self._emit("error", message=f"worker failure: {e}", kind=InferenceError.kind,
                           **_rid(msg.get("requestId")))

    def _handle(self, msg: dict) -> None:
        kind = msg.get("type")
        if kind == "init":
            self._handle_init(msg)
        elif kind == "infer":
            self._handle_infer(msg)
        else:
            log.debug("ignoring worker message of type %r", kind)

    def _progress(self, request_id):
        def emit(event: dict) -> None:
            self._emit("status", **event, **_rid(request_id))
        return emit

    def _handle_init(self, msg: dict) -> None:
        request_id = msg.get("requestId")
        if self.fetcher is not None and (msg.get("files") or msg.get("baseUrl")):
            self.fetcher.register(msg.get("files") or [], base_url=msg.get("baseUrl"))
        try:
            self.warmup.ensure_warm(on_progress=self._progress(request_id))
        except ModerationError as e:
            self._emit("error", message=str(e), kind=e.kind, **_rid(request_id))
            return
        self._emit("ready", **_rid(request_id))

    def _handle_infer(self, msg: dict) -> None:
        request_id = msg.get("requestId")
        text = (msg.get("text") or "").strip()
        if not text:
            decision = safe_decision(self.config, "empty input", source="lite")
            self._emit("result", decision=decision.to_wire(), **_rid(request_id))
            return
        if self._expired(msg):
            return
        try:
            model = self.warmup.ensure_warm(on_progress=self._progress(request_id))
            if self._expired(msg):
                return
            decision = decide(model.classify(text), self.config, source="lite")
        except InferenceError as e:
            self._inference_failed(e)
            self._emit("error", message=str(e), kind=e.kind, **_rid(request_id))
            return
        except ModerationError as e:
            self._emit("error", message=str(e), kind=e.kind, **_rid(request_id))
            return
        except Exception as e:
            log.exception("lite inference raised unexpectedly")
            err = InferenceError(f"lite inference failed: {e}")
            self._inference_failed(err)
            self._emit("error", message=str(err), kind=err.kind, **_rid(request_id))
            return
        with self._errors_lock:
            self._inference_errors = 0
        self._emit("result", decision=decision.to_wire(), **_rid(request_id))

    @staticmethod
    def _expired(msg: dict) -> bool:
        expires_at = msg.get("expiresAt")
        if expires_at is None or time.monotonic() < expires_at:
            return False
        log.debug("dropping infer request %s, requester already timed out", msg.get("requestId"))
        return True

    def _inference_failed(self, err: ModerationError) -> None:
        with self._errors_lock:
            self._inference_errors += 1
            count = self._inference_errors
            if count >= self.max_inference_errors:
                self._inference_errors = 0
        log.warning("lite inference error %d/%d: %s", count, self.max_inference_errors, err)
        if count >= self.max_inference_errors:
            self.warmup.demote(f"{self.max_inference_errors} consecutive inference errors: {err}")

    def inference_timed_out(self, err: LiteTimeoutError) -> None:
        """A warm request ran past its deadline; counts like an inference error."""
        self._inference_failed(err)


@dataclass
class _Pending:
    future: Future
    on_status: Optional[Listener] = None


class LiteClient:
    def __init__(self, worker: ModerationWorker, warmup: Optional[WarmupStateMachine] = None,
                 inference_timeout_s: float = 3.0, warmup_timeout_s: float = 60.0):
        self.worker = worker
        self.warmup = warmup
        self.inference_timeout_s = inference_timeout_s
        self.warmup_timeout_s = warmup_timeout_s
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()
        self._pending: Dict[int, _Pending] = {}
        self._lock = threading.Lock()
        worker.add_listener(self._on_message)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _on_message(self, msg: dict) -> None:
        request_id = msg.get("requestId")
        if request_id is None:
            return
        with self._lock:
            entry = self._pending.get(request_id)
        if entry is None:
            return
        kind = msg.get("type")
        if kind == "status":
            if entry.on_status:
                entry.on_status(msg)
            return
        if entry.future.done():
            return
        if kind in ("result", "ready"):
            entry.future.set_result(msg)
        elif kind == "error":
            entry.future.set_exception(
                error_from_kind(msg.get("kind"), msg.get("message") or "Lite worker inference error"))

    def _request(self, msg: dict, timeout: float, phase: str, on_status: Optional[Listener] = None) -> dict:
        request_id = self._next_id()
        entry = _Pending(Future(), on_status)
        with self._lock:
            self._pending[request_id] = entry
        try:
            self.worker.post_message({**msg, "requestId": request_id})
            return entry.future.result(timeout=timeout)
        except FutureTimeout:
            label = "warmup" if phase == "warmup" else "inference"
            raise LiteTimeoutError(f"Lite {label} timeout ({timeout:g}s).", phase=phase) from None
        finally:
            with self._lock:
                self._pending.pop(request_id, None)

    def infer(self, text: str, timeout: Optional[float] = None,
              on_status: Optional[Listener] = None) -> Decision:
        if timeout is None:
            warm = self.warmup is None or self.warmup.is_warm
            timeout = self.inference_timeout_s if warm else self.warmup_timeout_s
            phase = "inference" if warm else "warmup"
        else:
            phase = "inference"
        msg = {"type": "infer", "text": text, "expiresAt": time.monotonic() + timeout}
        try:
            reply = self._request(msg, timeout, phase, on_status)
        except LiteTimeoutError as e:
            if phase == "inference" and (self.warmup is None or self.warmup.is_warm):
                self.worker.inference_timed_out(e)
            raise
        try:
            return Decision.model_validate(reply["decision"])
        except (KeyError, ValidationError) as e:
            raise InferenceError(f"malformed lite result: {e}") from e

    def init(self, files: Iterable[dict] = (), base_url: Optional[str] = None,
             timeout: Optional[float] = None, on_status: Optional[Listener] = None) -> None:
        msg = {"type": "init", "files": list(files or ())}
        if base_url:
            msg["baseUrl"] = base_url
        self._request(msg, timeout or self.warmup_timeout_s, "warmup", on_status)

    def warmup_in_background(self, files: Iterable[dict] = (), base_url: Optional[str] = None) -> None:
        """Fire-and-forget init; the worker's reply carries no request id."""
        msg = {"type": "init", "files": list(files or ())}
        if base_url:
            msg["baseUrl"] = base_url
        self.worker.post_message(msg)

    def close(self) -> None:
        self.worker.remove_listener(self._on_message)
