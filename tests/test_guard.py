import threading
import time

from moderation.decision import decide
from moderation.errors import RemoteError
from moderation.guard import ModerationGuard


class ScriptedOrchestrator:
    """check() returns per-text decisions; texts listed in `hold` block until released."""

    def __init__(self, config, scores):
        self.config = config
        self.scores = scores
        self.hold = {}
        self.reviews = []
        self.review_result = None
        self.review_error = None

    def check(self, text):
        gate = self.hold.get(text)
        if gate is not None:
            gate.wait(5)
        if isinstance(self.scores.get(text), Exception):
            raise self.scores[text]
        return decide(self.scores.get(text, {}), self.config)

    def request_review(self, text, prior):
        self.reviews.append((text, prior))
        if self.review_error is not None:
            raise self.review_error
        return self.review_result


def test_sync_check_sets_state(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"bad": {"toxic": 0.9}})
    g = ModerationGuard(orch)
    g.check("bad")
    assert g.is_blocked
    assert not g.loading
    assert g.show_review


def test_stale_result_never_overwrites_newer(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"old": {"toxic": 0.9}, "new": {"toxic": 0.1}})
    orch.hold["old"] = threading.Event()
    g = ModerationGuard(orch)

    t = threading.Thread(target=g.check, args=("old",))
    t.start()
    while not g.loading:
        time.sleep(0.005)
    g.check("new")
    assert g.decision.action == "allow"

    orch.hold["old"].set()
    t.join(5)
    assert g.decision.action == "allow"
    assert not g.is_blocked


def test_debounce_keeps_only_last_submission(toxic_config):
    calls = []
    orch = ScriptedOrchestrator(toxic_config, {"abc": {"toxic": 0.4}})
    real = orch.check
    orch.check = lambda text: calls.append(text) or real(text)
    g = ModerationGuard(orch, debounce_s=0.2)
    g.submit("a")
    g.submit("ab")
    seq = g.submit("abc")
    deadline = time.time() + 5
    while g.decision_seq != seq and time.time() < deadline:
        time.sleep(0.01)
    assert calls == ["abc"]
    assert g.decision.action == "warn"


def test_empty_text_clears_decision(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"bad": {"toxic": 0.9}})
    g = ModerationGuard(orch)
    g.check("bad")
    assert g.check("  ") is None
    assert g.decision is None and not g.is_blocked


def test_remote_error_surfaces_as_error(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"x": RemoteError("HTTP 500: boom")})
    g = ModerationGuard(orch)
    assert g.check("x") is None
    assert "boom" in g.error
    assert not g.loading


def test_review_uses_decision_text(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"meh": {"toxic": 0.4}})
    orch.review_result = decide({"toxic": 0.0}, toxic_config, source="backend")
    g = ModerationGuard(orch)
    g.check("meh")
    out = g.request_review()
    assert orch.reviews[0][0] == "meh"
    assert out.action == "allow"
    assert g.decision.source == "backend"
    assert not g.reviewing


def test_review_skipped_for_allow(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"fine": {"toxic": 0.0}})
    g = ModerationGuard(orch)
    g.check("fine")
    assert g.request_review() is None
    assert orch.reviews == []


def test_review_error(toxic_config):
    orch = ScriptedOrchestrator(toxic_config, {"meh": {"toxic": 0.4}})
    orch.review_error = RemoteError("HTTP 502")
    g = ModerationGuard(orch)
    g.check("meh")
    assert g.request_review() is None
    assert g.error == "HTTP 502"
    assert g.decision.action == "warn"
