import math
import pytest
from pydantic import ValidationError

from moderation.config import BACKEND_MULTILABEL, BERT_TINY_TOXICITY
from moderation.decision import Decision, decide, normalize_action, safe_decision, top_risk


def test_binary_warn_band(toxic_config):
    d = decide({"not-toxic": 0.6, "toxic": 0.4}, toxic_config)
    assert d.action == "warn"
    assert d.label == "toxic"
    assert d.should_request_review is True
    assert d.blocked is False
    assert d.source == "lite"
    assert d.reason == "Lite (toxic-test): warn (40.0% toxic)"


def test_binary_block_at_threshold(toxic_config):
    d = decide({"not-toxic": 0.5, "toxic": 0.5}, toxic_config)
    assert d.action == "block"
    assert d.blocked is True
    assert d.should_request_review is False


def test_binary_allow_uses_safe_label(toxic_config):
    d = decide({"not-toxic": 0.9, "toxic": 0.1}, toxic_config)
    assert d.action == "allow"
    assert d.label == "not-toxic"
    assert d.should_request_review is False


def test_multilabel_block_picks_top_risk(multilabel_config):
    d = decide({"harassment": 0.2, "violence": 0.6, "safe": 0.3}, multilabel_config, source="backend")
    assert d.action == "block"
    assert d.label == "violence"
    assert d.reason.startswith("Backend (multi-test): block (60.0% violence)")


def test_tie_goes_to_earliest_label(multilabel_config):
    score, label = top_risk({"harassment": 0.4, "violence": 0.4, "safe": 0.0}, multilabel_config)
    assert label == "harassment" and score == 0.4
    assert decide({"harassment": 0.4, "violence": 0.4}, multilabel_config).label == "harassment"


def test_missing_labels_score_zero_and_safe_backfilled(multilabel_config):
    d = decide({"violence": 0.1}, multilabel_config)
    assert set(d.scores) == set(multilabel_config.labels)
    assert d.scores["harassment"] == 0.0
    assert d.scores["safe"] == pytest.approx(0.9)
    assert d.action == "allow"


def test_present_safe_score_is_kept(multilabel_config):
    d = decide({"violence": 0.1, "safe": 0.2}, multilabel_config)
    assert d.scores["safe"] == pytest.approx(0.2)


def test_nan_and_out_of_range_scores_are_clamped(toxic_config):
    d = decide({"toxic": float("nan"), "not-toxic": 3.0}, toxic_config)
    assert d.scores["toxic"] == 0.0
    assert d.scores["not-toxic"] == 1.0
    assert d.action == "allow"
    assert all(not math.isnan(v) for v in d.scores.values())


def test_monotonic_in_risk(toxic_config):
    order = {"allow": 0, "warn": 1, "block": 2}
    prev = -1
    for i in range(0, 101):
        s = i / 100
        a = order[decide({"toxic": s, "not-toxic": 1 - s}, toxic_config).action]
        assert a >= prev
        prev = a


def test_deterministic(multilabel_config):
    scores = {"harassment": 0.31, "violence": 0.12, "safe": 0.5}
    assert decide(scores, multilabel_config) == decide(dict(scores), multilabel_config)


def test_degraded_reason_prefix():
    d = decide({}, BACKEND_MULTILABEL, source="backend", degraded="Backend unavailable - partial scores")
    assert d.action == "allow"
    assert d.label == "safe"
    assert d.reason.startswith("Backend unavailable - partial scores; Backend (mdeberta-multilabel)")


def test_no_risky_labels_always_allows():
    from moderation.config import ModelConfig, Thresholds
    cfg = ModelConfig(id="x", kind="binary", labels=["a", "b"], safe_labels=["a"],
                      thresholds=Thresholds(warn=0.0, block=0.0))
    d = decide({"a": 0.1, "b": 0.9}, cfg)
    assert d.action == "allow" and d.label == "a"


def test_safe_decision():
    d = safe_decision(BERT_TINY_TOXICITY, "moderation disabled", source="backend")
    assert d.action == "allow"
    assert d.label == "not-toxic"
    assert d.scores == {"not-toxic": 1.0, "toxic": 0.0}
    assert d.reason == "moderation disabled"


def test_wire_format_camel_case(toxic_config):
    wire = decide({"toxic": 0.35}, toxic_config).to_wire()
    assert wire["shouldRequestReview"] is True
    assert "should_request_review" not in wire
    assert Decision.model_validate(wire).action == "warn"


def test_inconsistent_decision_rejected():
    with pytest.raises(ValidationError):
        Decision(label="toxic", scores={}, action="block", blocked=False,
                 should_request_review=False, reason="", source="lite")
    with pytest.raises(ValidationError):
        Decision(label="toxic", scores={}, action="allow", blocked=False,
                 should_request_review=True, reason="", source="lite")


def test_stamped_overrides_source(toxic_config):
    d = decide({"toxic": 0.9}, toxic_config)
    assert d.stamped("backend").source == "backend"
    assert d.stamped("lite") is d


def test_normalize_action(toxic_config):
    assert normalize_action(decide({"toxic": 0.9}, toxic_config)) == "block"
    assert normalize_action(decide({"toxic": 0.4}, toxic_config)) == "warn"
    assert normalize_action(decide({"toxic": 0.1}, toxic_config)) == "allow"
