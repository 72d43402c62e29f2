import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .artifacts import ArtifactCache
from .config import LiteSettings, ModelConfig
from .errors import InferenceError, InitError, ModerationError
from .runtime import InferenceRuntime, OnnxSession, TorchSession
from .tokenizer import WordTokenizer

ALLOWED_FILES = (
    "model.onnx",
    "model_quantized.onnx",
    "tokenizer.json",
    "config.json",
    "vocab.txt",
    "special_tokens_map.json",
    "tokenizer_config.json",
)
TOK_FILES = ("tokenizer.json", "vocab.txt")
HEALTH_TEXT = "warmup check"


@dataclass
class LiteModel:
    config: ModelConfig
    tokenizer: WordTokenizer
    runtime: InferenceRuntime

    def classify(self, text: str):
        return self.runtime.classify(self.tokenizer.encode(text))


def _fail(msg, cause=None):
    raise InitError(msg) from cause


def _health_check(model: LiteModel) -> None:
    try:
        model.classify(HEALTH_TEXT)
    except InferenceError as e:
        _fail(f"lite health check failed: {e}", e)


def _tokenizer_from_dir(path: Path, max_len: int) -> WordTokenizer:
    if (path / "tokenizer.json").exists():
        return WordTokenizer.from_tokenizer_json((path / "tokenizer.json").read_bytes(), max_len=max_len)
    if (path / "vocab.txt").exists():
        with open(path / "vocab.txt", encoding="utf-8") as f:
            return WordTokenizer.from_vocab_txt(f, max_len=max_len)
    _fail(f"no tokenizer files in {path}")


def load_checkpoint_model(config: ModelConfig, lite: LiteSettings) -> LiteModel:
    """Offline path: build the lite model from a local HF checkpoint directory."""
    path = Path(lite.checkpoint_dir or "")
    if not path.is_dir():
        _fail(f"checkpoint dir not found: {path}")
    tokenizer = _tokenizer_from_dir(path, lite.max_seq_len)
    try:
        session = TorchSession(str(path))
    except Exception as e:
        _fail(f"HF load failed for dir {path}: {e}", e)
    return LiteModel(config, tokenizer, InferenceRuntime(config, session))


def make_lite_loader(config: ModelConfig, cache: ArtifactCache, lite: LiteSettings,
                     session_factory: Callable = OnnxSession):
    """Return the warmup loader: artifacts -> tokenizer -> session -> health check."""

    def loader(deadline, on_progress: Optional[Callable[[dict], None]] = None) -> LiteModel:
        emit = on_progress or (lambda _ev: None)
        emit({"status": "initiate"})

        if lite.checkpoint_dir:
            model = load_checkpoint_model(config, lite)
            deadline.check("checkpoint load")
            _health_check(model)
            emit({"status": "ready"})
            return model

        def progress(file, percent):
            emit({"status": "downloading", "file": file, "percent": percent})

        progress(lite.tokenizer_file, 0)
        tok_bytes = cache.get(lite.tokenizer_file, progress, deadline)
        progress(lite.tokenizer_file, 100)
        deadline.check("tokenizer download")
        tokenizer = WordTokenizer.from_tokenizer_json(tok_bytes, max_len=lite.max_seq_len)

        progress(lite.model_file, 0)
        model_bytes = cache.get(lite.model_file, progress, deadline)
        deadline.check("model download")
        try:
            session = session_factory(model_bytes)
        except ModerationError:
            raise
        except Exception as e:
            _fail(f"session construction failed: {e}", e)
        progress(lite.model_file, 100)
        deadline.check("session construction")

        model = LiteModel(config, tokenizer, InferenceRuntime(config, session))
        _health_check(model)
        emit({"status": "ready"})
        return model

    return loader


def validate_artifacts(path_str: Optional[str], config: Optional[ModelConfig] = None) -> dict:
    """Lightweight validation of a lite artifact directory.
    - need an ONNX graph (or config.json + HF weights) and a tokenizer file
    - config.json id2label, when present, must match the configured labels
    Returns a dict with details and ok flag.
    """
    out = {
        "ok": False,
        "type": None,
        "exists": False,
        "reason": None,
        "num_labels": None,
        "id2label": None,
        "missing": [],
    }
    p = Path(path_str or "")
    if not path_str or not p.exists():
        out["reason"] = f"not found: {p}"
        return out
    out["exists"] = True
    if not p.is_dir():
        out["type"] = "unknown"
        out["reason"] = f"not a directory: {p}"
        return out

    if any((p / f).exists() for f in ("model.onnx", "model_quantized.onnx")):
        out["type"] = "onnx"
    elif (p / "config.json").exists() and any((p / f).exists() for f in ("pytorch_model.bin", "model.safetensors")):
        out["type"] = "hf"
    else:
        out["missing"].append("model.onnx")
    if not any((p / f).exists() for f in TOK_FILES):
        out["missing"].append("tokenizer_files")

    if (p / "config.json").exists():
        try:
            cfg = json.loads((p / "config.json").read_text("utf-8"))
            out["num_labels"] = cfg.get("num_labels") or (len(cfg["id2label"]) if cfg.get("id2label") else None)
            out["id2label"] = cfg.get("id2label")
        except (OSError, ValueError, AttributeError) as e:
            out["reason"] = f"config.json parse failed: {e}"
        if config is not None and isinstance(out["id2label"], dict) and out["id2label"]:
            try:
                ordered = [str(out["id2label"][k]) for k in sorted(out["id2label"], key=int)]
            except ValueError:
                ordered = [str(v) for v in out["id2label"].values()]
            if [l.lower() for l in ordered] != list(config.labels):
                out["label_mismatch"] = {"ckpt": ordered, "config": list(config.labels)}
                out["reason"] = out["reason"] or "id2label does not match configured labels"

    if not out["missing"] and not out.get("reason"):
        out["ok"] = True
    elif not out.get("reason"):
        out["reason"] = f"missing: {', '.join(out['missing'])}"
    return out


def artifact_path(artifact_dir: Optional[str], file: str) -> Optional[str]:
    if not artifact_dir or file not in ALLOWED_FILES:
        return None
    path = os.path.join(artifact_dir, file)
    return path if os.path.isfile(path) else None
