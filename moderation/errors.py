"""
Error taxonomy for the moderation pipeline plus the small Ok/Err result
types the orchestrator uses to branch on failure kind.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Union


class ModerationError(Exception):
    kind = "moderation"


class ArtifactFetchError(ModerationError):
    """Download or cache failure for a model artifact."""
    kind = "artifact_fetch"


class InitError(ModerationError):
    """Tokenizer or inference session could not be built."""
    kind = "init"


class InferenceError(ModerationError):
    """Label-count mismatch or a fault inside the runtime."""
    kind = "inference"


class LiteTimeoutError(ModerationError, TimeoutError):
    kind = "timeout"

    def __init__(self, message: str, phase: str = "inference"):
        super().__init__(message)
        self.phase = phase


class RemoteError(ModerationError):
    """Non-2xx or malformed response from the backend tier."""
    kind = "remote"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# kinds reported by the worker protocol, mapped back to exception types
ERROR_TYPES = {
    cls.kind: cls
    for cls in (ArtifactFetchError, InitError, InferenceError, LiteTimeoutError, RemoteError)
}


def error_from_kind(kind: Optional[str], message: str) -> ModerationError:
    cls = ERROR_TYPES.get(kind or "", InferenceError)
    if cls is LiteTimeoutError:
        return LiteTimeoutError(message, phase="warmup")
    return cls(message)


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Err:
    kind: str
    message: str = ""


Result = Union[Ok, Err]
