import pytest
from pydantic import ValidationError

from moderation.config import (
    BERT_TINY_TOXICITY, ModelConfig, Settings, Thresholds, Timeouts, load_settings,
)


def test_defaults_without_file(tmp_path, monkeypatch):
    for env in ("MODERATION_ENABLED", "MODERATION_LITE_ENABLED", "MODERATION_MODEL_ENABLED"):
        monkeypatch.delenv(env, raising=False)
    s = load_settings(str(tmp_path / "nope.yaml"))
    assert s.flags.moderation_enabled is False
    assert s.flags.lite_enabled is True
    assert s.flags.model_access_enabled is False
    assert s.timeouts.warmup_s == 60 and s.timeouts.inference_s == 3
    assert s.lite_config() is BERT_TINY_TOXICITY
    assert s.backend_config().id == "mdeberta-multilabel"


def test_yaml_then_env_override(tmp_path, monkeypatch):
    p = tmp_path / "m.yaml"
    p.write_text(
        "flags:\n  moderation_enabled: false\n  telemetry_enabled: true\n"
        "timeouts:\n  inference_s: 2\n"
        "backend:\n  inference_url: http://yaml\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MODERATION_ENABLED", "true")
    monkeypatch.setenv("MODERATION_TELEMETRY_ENABLED", "0")
    monkeypatch.setenv("INTERNAL_MODERATION_INFERENCE_URL", "http://env")
    monkeypatch.setenv("MODERATION_LITE_MODEL_ID", "something-else")
    s = load_settings(str(p))
    assert s.flags.moderation_enabled is True
    assert s.flags.telemetry_enabled is False
    assert s.timeouts.inference_s == 2
    assert s.backend.inference_url == "http://env"
    assert s.lite_config() is None


def test_config_path_from_env(tmp_path, monkeypatch):
    p = tmp_path / "m.yaml"
    p.write_text("debounce_ms: 50\n", encoding="utf-8")
    monkeypatch.setenv("MODERATION_CONFIG", str(p))
    assert load_settings().debounce_ms == 50


def test_thresholds_must_be_ordered():
    with pytest.raises(ValidationError):
        Thresholds(warn=0.6, block=0.5)
    with pytest.raises(ValidationError):
        Thresholds(warn=-0.1, block=0.5)


def test_warmup_budget_not_below_inference():
    with pytest.raises(ValidationError):
        Timeouts(warmup_s=1, inference_s=3)


@pytest.mark.parametrize("kwargs", [
    dict(kind="binary", labels=["a", "b", "c"]),
    dict(kind="binary", labels=["a", "a"]),
    dict(kind="multilabel", labels=[]),
    dict(kind="multilabel", labels=["a", "b"], risky_labels=["z"]),
    dict(kind="multilabel", labels=["a", "b"], risky_labels=["a"], safe_labels=["a"]),
])
def test_bad_model_configs(kwargs):
    with pytest.raises(ValidationError):
        ModelConfig(id="bad", **kwargs)


def test_model_config_is_frozen():
    with pytest.raises(ValidationError):
        BERT_TINY_TOXICITY.id = "other"


def test_builtin_thresholds():
    assert BERT_TINY_TOXICITY.thresholds.warn == 0.43
    assert BERT_TINY_TOXICITY.thresholds.block == 0.5
    assert Settings().backend_config().thresholds.block == 0.35
