import threading
import time
import pytest

from moderation.errors import InferenceError, InitError, LiteTimeoutError
from moderation.model_loader import LiteModel
from moderation.runtime import InferenceRuntime
from moderation.tokenizer import WordTokenizer
from moderation.warmup import WarmupState, WarmupStateMachine
from moderation.worker import LiteClient, ModerationWorker

from conftest import FakeFetcher, FakeSession, TOKENIZER_JSON


def make_model(config, session):
    return LiteModel(config, WordTokenizer.from_tokenizer_json(TOKENIZER_JSON), InferenceRuntime(config, session))


def make_stack(config, loader, **kw):
    warmup = WarmupStateMachine(loader, timeout_s=5)
    worker = ModerationWorker(config, warmup, fetcher=kw.pop("fetcher", None),
                              max_inference_errors=kw.pop("max_inference_errors", 3))
    client = LiteClient(worker, warmup, inference_timeout_s=kw.pop("inference_timeout_s", 2),
                        warmup_timeout_s=5)
    return worker, warmup, client


@pytest.fixture
def stack(toxic_config):
    session = FakeSession([0.0, 2.0])
    worker, warmup, client = make_stack(toxic_config, lambda d, cb: make_model(toxic_config, session))
    yield worker, warmup, client, session
    client.close()
    worker.stop()


def test_infer_returns_lite_decision(stack):
    worker, warmup, client, _ = stack
    d = client.infer("you")
    assert d.source == "lite"
    assert d.action == "block"
    assert warmup.state is WarmupState.WARM
    assert client.pending_count == 0


def test_empty_text_is_safe_without_loading(stack):
    worker, warmup, client, session = stack
    d = client.infer("   ")
    assert d.action == "allow" and d.reason == "empty input"
    assert warmup.state is WarmupState.COLD
    assert session.calls == []


def test_status_events_reach_requester(toxic_config):
    def loader(deadline, cb):
        cb({"status": "initiate"})
        cb({"status": "downloading", "file": "model.onnx", "percent": 40})
        cb({"status": "ready"})
        return make_model(toxic_config, FakeSession([1.0, 0.0]))

    worker, warmup, client = make_stack(toxic_config, loader)
    seen = []
    client.init(on_status=seen.append)
    assert [m["status"] for m in seen] == ["initiate", "downloading", "ready"]
    assert all(m["type"] == "status" for m in seen)
    worker.stop()


def test_init_forwards_files_to_fetcher(toxic_config):
    fetcher = FakeFetcher()
    worker, warmup, client = make_stack(toxic_config, lambda d, cb: "m", fetcher=fetcher)
    client.init(files=[{"file": "model.onnx", "url": "http://x/m"}], base_url="http://x")
    assert fetcher.registered == [([{"file": "model.onnx", "url": "http://x/m"}], "http://x")]
    worker.stop()


def test_init_failure_is_typed(toxic_config):
    def loader(deadline, cb):
        raise InitError("bad tokenizer")

    worker, warmup, client = make_stack(toxic_config, loader)
    with pytest.raises(InitError, match="bad tokenizer"):
        client.init()
    assert warmup.state is WarmupState.COLD
    worker.stop()


def test_messages_for_other_requests_are_ignored(stack):
    worker, warmup, client, _ = stack
    client.infer("warm up")
    # unknown ids and id-less replies must not disturb the pending table
    worker._emit("result", decision={}, requestId=99999)
    worker._emit("ready")
    d = client.infer("hello")
    assert d.source == "lite"
    assert client.pending_count == 0


def test_timeout_cleans_pending(toxic_config):
    gate = threading.Event()
    session = FakeSession([0.0, 1.0])

    class SlowSession(FakeSession):
        def run(self, input_ids, attention_mask):
            gate.wait(5)
            return session.run(input_ids, attention_mask)

    worker, warmup, client = make_stack(toxic_config, lambda d, cb: make_model(toxic_config, SlowSession()))
    warmup.ensure_warm()
    with pytest.raises(LiteTimeoutError) as ei:
        client.infer("hello", timeout=0.05)
    assert ei.value.phase == "inference"
    assert isinstance(ei.value, TimeoutError)
    assert client.pending_count == 0
    gate.set()
    worker.stop()


def test_inference_errors_demote_after_threshold(toxic_config):
    loads = []

    def loader(deadline, cb):
        loads.append(1)
        return make_model(toxic_config, FakeSession([1.0, 2.0, 3.0]))

    worker, warmup, client = make_stack(toxic_config, loader, max_inference_errors=2)
    warmup.ensure_warm()
    with pytest.raises(InferenceError):
        client.infer("hello")
    assert warmup.state is WarmupState.WARM
    with pytest.raises(InferenceError):
        client.infer("hello")
    assert warmup.state is WarmupState.COLD
    assert loads == [1]
    worker.stop()


def test_background_warmup_has_no_request_id(toxic_config):
    worker, warmup, client = make_stack(toxic_config, lambda d, cb: make_model(toxic_config, FakeSession()))
    seen = []
    done = threading.Event()

    def listen(msg):
        seen.append(msg)
        if msg["type"] in ("ready", "error"):
            done.set()

    worker.add_listener(listen)
    client.warmup_in_background()
    assert done.wait(5)
    assert warmup.state is WarmupState.WARM
    worker.stop()
    ready = [m for m in seen if m["type"] == "ready"]
    assert ready and "requestId" not in ready[0]


def test_abandoned_requests_are_dropped(toxic_config):
    session = FakeSession([0.0, 1.0])

    class SlowSession(FakeSession):
        def run(self, input_ids, attention_mask):
            time.sleep(0.5)
            return session.run(input_ids, attention_mask)

    worker, warmup, client = make_stack(toxic_config, lambda d, cb: make_model(toxic_config, SlowSession()),
                                        max_inference_errors=10)
    warmup.ensure_warm()
    for _ in range(5):
        with pytest.raises(LiteTimeoutError):
            client.infer("hello", timeout=0.05)
    assert client.pending_count == 0
    # queued behind the abandoned ones; only the first of those reached the session
    assert client.infer("hello", timeout=2).source == "lite"
    assert len(session.calls) == 2
    worker.stop()


def test_repeated_timeouts_demote(toxic_config):
    gate = threading.Event()

    class HungSession(FakeSession):
        def run(self, input_ids, attention_mask):
            gate.wait(5)
            return super().run(input_ids, attention_mask)

    worker, warmup, client = make_stack(toxic_config, lambda d, cb: make_model(toxic_config, HungSession([0.0, 1.0])),
                                        max_inference_errors=2)
    warmup.ensure_warm()
    with pytest.raises(LiteTimeoutError):
        client.infer("hello", timeout=0.05)
    assert warmup.state is WarmupState.WARM
    with pytest.raises(LiteTimeoutError):
        client.infer("hello", timeout=0.05)
    assert warmup.state is WarmupState.COLD
    gate.set()
    worker.stop()


def test_unexpected_classify_errors_demote(toxic_config):
    class BrokenModel:
        def classify(self, text):
            raise RuntimeError("tokenizer exploded")

    worker, warmup, client = make_stack(toxic_config, lambda d, cb: BrokenModel(), max_inference_errors=2)
    warmup.ensure_warm()
    with pytest.raises(InferenceError, match="tokenizer exploded"):
        client.infer("hello")
    assert warmup.state is WarmupState.WARM
    with pytest.raises(InferenceError):
        client.infer("hello")
    assert warmup.state is WarmupState.COLD
    worker.stop()
