from __future__ import annotations
import os, yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Literal, Optional, Dict


class Thresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    warn: float = Field(0.3, ge=0.0, le=1.0)
    block: float = Field(0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered(self):
        if self.warn > self.block:
            raise ValueError(f"warn threshold {self.warn} must not exceed block threshold {self.block}")
        return self


class ModelConfig(BaseModel):
    """Describes one moderation model (lite or backend).

    `labels` must be in the model's id2label order; risky and safe labels are
    disjoint subsets of it.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    kind: Literal["binary", "multilabel"]
    labels: List[str]
    risky_labels: List[str] = Field(default_factory=list)
    safe_labels: List[str] = Field(default_factory=list)
    thresholds: Thresholds = Field(default_factory=Thresholds)

    @model_validator(mode="after")
    def _check_labels(self):
        if not self.labels:
            raise ValueError("labels must not be empty")
        if len(set(self.labels)) != len(self.labels):
            raise ValueError(f"duplicate labels in {self.labels}")
        if self.kind == "binary" and len(self.labels) != 2:
            raise ValueError(f"binary model needs exactly 2 labels, got {len(self.labels)}")
        unknown = [l for l in (*self.risky_labels, *self.safe_labels) if l not in self.labels]
        if unknown:
            raise ValueError(f"labels not in model output: {unknown}")
        overlap = set(self.risky_labels) & set(self.safe_labels)
        if overlap:
            raise ValueError(f"labels both risky and safe: {sorted(overlap)}")
        return self

    @property
    def safe_label(self) -> str:
        return self.safe_labels[0] if self.safe_labels else "safe"


BERT_TINY_TOXICITY = ModelConfig(
    id="bert-tiny-toxicity",
    kind="binary",
    labels=["not-toxic", "toxic"],
    risky_labels=["toxic"],
    safe_labels=["not-toxic"],
    thresholds=Thresholds(warn=0.43, block=0.5),
)

BACKEND_MULTILABEL = ModelConfig(
    id="mdeberta-multilabel",
    kind="multilabel",
    labels=["harassment", "violence", "sexual", "exploitation", "harm", "illicit", "informational", "safe"],
    risky_labels=["harassment", "violence", "sexual", "exploitation", "harm", "illicit", "informational"],
    safe_labels=["safe"],
    thresholds=Thresholds(warn=0.3, block=0.35),
)

LITE_MODELS: Dict[str, ModelConfig] = {BERT_TINY_TOXICITY.id: BERT_TINY_TOXICITY}
BACKEND_MODELS: Dict[str, ModelConfig] = {BACKEND_MULTILABEL.id: BACKEND_MULTILABEL}


class Flags(BaseModel):
    moderation_enabled: bool = False
    lite_enabled: bool = True
    telemetry_enabled: bool = True
    override_enabled: bool = True
    model_access_enabled: bool = False


class Timeouts(BaseModel):
    warmup_s: float = Field(60.0, gt=0)
    inference_s: float = Field(3.0, gt=0)
    backend_s: float = Field(10.0, gt=0)
    upstream_s: float = Field(10.0, gt=0)
    artifact_s: float = Field(30.0, gt=0)

    @model_validator(mode="after")
    def _asymmetric(self):
        if self.warmup_s < self.inference_s:
            raise ValueError("warmup budget must be at least the inference budget")
        return self


class WarmupPolicy(BaseModel):
    max_failures: int = Field(3, ge=1)
    backoff_base_s: float = Field(5.0, ge=0)
    backoff_max_s: float = Field(300.0, ge=0)
    max_inference_errors: int = Field(3, ge=1)


class LiteSettings(BaseModel):
    model_id: str = BERT_TINY_TOXICITY.id
    max_seq_len: int = Field(128, ge=2, le=512)
    cache_dir: Optional[str] = ".cache/lite-model-v1"
    artifact_base_url: Optional[str] = None
    model_file: str = "model.onnx"
    tokenizer_file: str = "tokenizer.json"
    # local directory served by GET /moderation/model
    artifact_dir: Optional[str] = None
    # offline alternative: a local HF checkpoint directory, bypasses the cache
    checkpoint_dir: Optional[str] = None


class BackendSettings(BaseModel):
    model_id: str = BACKEND_MULTILABEL.id
    check_url: str = "http://localhost:8000/moderation/check"
    inference_url: Optional[str] = None
    api_key: Optional[str] = None


class TelemetrySettings(BaseModel):
    endpoint: Optional[str] = None
    forward_url: Optional[str] = None
    max_batch: int = Field(50, ge=1)
    flush_s: float = Field(1.5, gt=0)
    max_ingest: int = Field(100, ge=1)


class Settings(BaseModel):
    flags: Flags = Field(default_factory=Flags)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    warmup: WarmupPolicy = Field(default_factory=WarmupPolicy)
    lite: LiteSettings = Field(default_factory=LiteSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    debounce_ms: int = Field(300, ge=0)

    def lite_config(self) -> Optional[ModelConfig]:
        return LITE_MODELS.get(self.lite.model_id)

    def backend_config(self) -> ModelConfig:
        return BACKEND_MODELS.get(self.backend.model_id, BACKEND_MULTILABEL)


_FLAG_ENV = {
    "MODERATION_ENABLED": "moderation_enabled",
    "MODERATION_LITE_ENABLED": "lite_enabled",
    "MODERATION_TELEMETRY_ENABLED": "telemetry_enabled",
    "MODERATION_OVERRIDE_ENABLED": "override_enabled",
    "MODERATION_MODEL_ENABLED": "model_access_enabled",
}


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _apply_env(data: dict) -> dict:
    flags = data.setdefault("flags", {})
    for env, key in _FLAG_ENV.items():
        raw = os.getenv(env)
        if raw is not None and raw.strip():
            flags[key] = _env_bool(raw)
    lite = data.setdefault("lite", {})
    backend = data.setdefault("backend", {})
    telemetry = data.setdefault("telemetry", {})
    if os.getenv("MODERATION_LITE_MODEL_ID"):
        lite["model_id"] = os.environ["MODERATION_LITE_MODEL_ID"]
    if os.getenv("MODERATION_ARTIFACT_DIR"):
        lite["artifact_dir"] = os.environ["MODERATION_ARTIFACT_DIR"]
    if os.getenv("INTERNAL_MODERATION_INFERENCE_URL"):
        backend["inference_url"] = os.environ["INTERNAL_MODERATION_INFERENCE_URL"]
    if os.getenv("MODERATION_CHECK_URL"):
        backend["check_url"] = os.environ["MODERATION_CHECK_URL"]
    if os.getenv("TELEMETRY_INGEST_URL"):
        telemetry["forward_url"] = os.environ["TELEMETRY_INGEST_URL"]
    return data


def load_settings(path: Optional[str] = None) -> Settings:
    """Read YAML settings once, then let environment flags override them."""
    cfg_path = path or os.getenv("MODERATION_CONFIG", "config/moderation.yaml")
    data = {}
    if os.path.exists(cfg_path):
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    return Settings.model_validate(_apply_env(data))
