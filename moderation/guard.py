import itertools
import logging
import threading
from typing import Optional

from .decision import Decision
from .errors import RemoteError

log = logging.getLogger(__name__)


class ModerationGuard:
    """One text-submission stream: debounced checks, newest submission wins.

    Every submission gets a sequence number. A result is stored only if it
    belongs to the latest submission, so a slow answer for old text can never
    replace the decision for newer text.
    """

    def __init__(self, orchestrator, debounce_s: float = 0.3):
        self.orchestrator = orchestrator
        self.debounce_s = debounce_s
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._latest = 0
        self._decision_text = ""
        self._timer: Optional[threading.Timer] = None
        self.decision: Optional[Decision] = None
        self.decision_seq = 0
        self.error: Optional[str] = None
        self.loading = False
        self.reviewing = False

    @property
    def is_blocked(self) -> bool:
        return bool(self.decision and self.decision.blocked)

    @property
    def show_review(self) -> bool:
        return bool(self.decision and self.decision.action in ("warn", "block"))

    def _claim(self, text: str) -> int:
        with self._lock:
            seq = next(self._seq)
            self._latest = seq
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            return seq

    def submit(self, text: str) -> int:
        """Schedule a check after the debounce window; supersedes pending ones."""
        seq = self._claim(text)
        timer = threading.Timer(self.debounce_s, self._run, (seq, text))
        timer.daemon = True
        with self._lock:
            if seq == self._latest:
                self._timer = timer
                timer.start()
        return seq

    def check(self, text: str) -> Optional[Decision]:
        return self._run(self._claim(text), text)

    def _is_current(self, seq: int) -> bool:
        return seq == self._latest

    def _run(self, seq: int, text: str) -> Optional[Decision]:
        if not text.strip():
            with self._lock:
                if self._is_current(seq):
                    self.decision, self.decision_seq, self.error, self.loading = None, seq, None, False
            return None
        with self._lock:
            if self._is_current(seq):
                self.loading, self.error = True, None
        try:
            decision = self.orchestrator.check(text)
        except RemoteError as e:
            with self._lock:
                if self._is_current(seq):
                    self.error = str(e) or "Moderation fallback failed"
                    self.loading = False
            return None
        with self._lock:
            if not self._is_current(seq):
                log.debug("dropping result for superseded submission %d (latest %d)", seq, self._latest)
                return decision
            self.decision, self.decision_seq, self.loading = decision, seq, False
            self._decision_text = text
        return decision

    def request_review(self) -> Optional[Decision]:
        with self._lock:
            prior, seq, text = self.decision, self.decision_seq, self._decision_text
        if prior is None or prior.action not in ("warn", "block"):
            return None
        self.reviewing, self.error = True, None
        try:
            decision = self.orchestrator.request_review(text, prior)
        except RemoteError as e:
            self.error = str(e) or "Review failed"
            return None
        finally:
            self.reviewing = False
        with self._lock:
            if self._is_current(seq):
                self.decision = decision
        return decision

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
