# moderation/runtime.py
# One forward pass of the lite classifier: token ids -> per-label probabilities.
# Sessions wrap either an ONNX graph (onnxruntime) or a HF checkpoint directory.

import threading
import numpy as np
import torch
from typing import Dict, Sequence, Union

from .config import ModelConfig
from .errors import InferenceError, ModerationError


class OnnxSession:
    """onnxruntime session fed with int64 input_ids / attention_mask."""

    def __init__(self, model: Union[bytes, str]):
        import onnxruntime as ort
        opts = ort.SessionOptions()
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        opts.intra_op_num_threads = 1
        self._sess = ort.InferenceSession(model, sess_options=opts, providers=["CPUExecutionProvider"])
        self.input_names = [i.name for i in self._sess.get_inputs()]
        outputs = [o.name for o in self._sess.get_outputs()]
        self._output = "logits" if "logits" in outputs else outputs[0]

    def run(self, input_ids: torch.Tensor, attention_mask: torch.Tensor):
        feeds = {
            "input_ids": input_ids.numpy(),
            "attention_mask": attention_mask.numpy(),
        }
        if "token_type_ids" in self.input_names:
            feeds["token_type_ids"] = np.zeros_like(feeds["input_ids"])
        feeds = {k: v for k, v in feeds.items() if k in self.input_names}
        return self._sess.run([self._output], feeds)[0]


class TorchSession:
    """HF AutoModelForSequenceClassification loaded from a checkpoint directory."""

    def __init__(self, model_dir: str, device: str = "cpu"):
        from transformers import AutoModelForSequenceClassification
        self.device = device
        self.model = AutoModelForSequenceClassification.from_pretrained(model_dir)
        self.model.to(device)
        self.model.eval()

    @torch.no_grad()
    def run(self, input_ids: torch.Tensor, attention_mask: torch.Tensor):
        out = self.model(input_ids=input_ids.to(self.device), attention_mask=attention_mask.to(self.device))
        return out.logits.cpu()


def activate(logits: torch.Tensor, kind: str) -> torch.Tensor:
    # binary heads are mutually exclusive, multilabel heads are independent
    if kind == "binary":
        return logits.softmax(-1)
    if kind == "multilabel":
        return logits.sigmoid()
    raise InferenceError(f"unknown model kind: {kind}")


class InferenceRuntime:
    """Holds a loaded session and serializes calls to it."""

    def __init__(self, config: ModelConfig, session=None):
        self.config = config
        self._session = session
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def load(self, session) -> None:
        with self._lock:
            self._session = session

    @staticmethod
    def feeds(token_ids: Sequence[int]):
        input_ids = torch.tensor([list(token_ids)], dtype=torch.long)
        attention_mask = torch.ones_like(input_ids)
        return input_ids, attention_mask

    def classify(self, token_ids: Sequence[int]) -> Dict[str, float]:
        if self._session is None:
            # warmup gating should make this unreachable
            raise InferenceError("invariant violated: lite model not loaded")
        if not token_ids:
            raise InferenceError("empty token sequence")
        input_ids, attention_mask = self.feeds(token_ids)
        if input_ids.shape != attention_mask.shape:
            raise InferenceError("input_ids and attention_mask differ in shape")

        with self._lock:
            try:
                raw = self._session.run(input_ids, attention_mask)
            except ModerationError:
                raise
            except Exception as e:
                raise InferenceError(f"runtime execution failed: {e}") from e

        try:
            logits = torch.as_tensor(np.asarray(raw), dtype=torch.float32).reshape(-1)
        except (TypeError, ValueError, RuntimeError) as e:
            raise InferenceError(f"unreadable model output: {e}") from e
        labels = self.config.labels
        if logits.numel() != len(labels):
            raise InferenceError(f"model returned {logits.numel()} logits for {len(labels)} labels")
        probs = activate(logits, self.config.kind)
        if not torch.isfinite(probs).all():
            raise InferenceError("non-finite probabilities")
        return {label: float(p) for label, p in zip(labels, probs.tolist())}

