import os, json, threading
import pytest

from moderation.config import ModelConfig, Thresholds


@pytest.fixture(autouse=True, scope="session")
def set_env_defaults():
    # deterministic HMAC, and keep the real YAML's URLs out of the tests
    os.environ.setdefault("AUDIT_HMAC", "test_secret")
    os.environ.setdefault("MODERATION_CONFIG", os.path.join("tests", "missing-config.yaml"))
    yield


@pytest.fixture
def toxic_config():
    return ModelConfig(
        id="toxic-test",
        kind="binary",
        labels=["not-toxic", "toxic"],
        risky_labels=["toxic"],
        safe_labels=["not-toxic"],
        thresholds=Thresholds(warn=0.3, block=0.5),
    )


@pytest.fixture
def multilabel_config():
    return ModelConfig(
        id="multi-test",
        kind="multilabel",
        labels=["harassment", "violence", "safe"],
        risky_labels=["harassment", "violence"],
        safe_labels=["safe"],
        thresholds=Thresholds(warn=0.3, block=0.35),
    )


class FakeSession:
    """Stands in for an onnx/torch session: returns fixed logits."""

    def __init__(self, logits=(0.0, 0.0), error=None):
        self.logits = list(logits)
        self.error = error
        self.calls = []

    def run(self, input_ids, attention_mask):
        self.calls.append(input_ids.tolist())
        if self.error is not None:
            raise self.error
        return [self.logits]


class FakeFetcher:
    """Artifact fetcher serving in-memory files; counts fetches per file."""

    def __init__(self, files=None, delay=None, error=None):
        self.files = dict(files or {})
        self.delay = delay
        self.error = error
        self.calls = {}
        self.registered = []
        self._lock = threading.Lock()

    def register(self, files=(), base_url=None):
        self.registered.append((list(files or ()), base_url))

    def fetch(self, file, on_progress=None, deadline=None):
        with self._lock:
            self.calls[file] = self.calls.get(file, 0) + 1
        if self.delay is not None:
            self.delay.wait(5)
        if self.error is not None:
            raise self.error
        if on_progress:
            on_progress(file, 50)
        return self.files[file]


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.headers = {}

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeHttp:
    """requests.Session replacement recording posts."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


TOKENIZER_JSON = json.dumps({
    "model": {"vocab": {"[PAD]": 0, "[UNK]": 100, "[CLS]": 101, "[SEP]": 102, "hello": 7592, "world": 2088, "you": 2017}}
}).encode()


@pytest.fixture
def tokenizer_bytes():
    return TOKENIZER_JSON
