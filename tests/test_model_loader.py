from __future__ import annotations

import asyncio
from types import SimpleNamespace

import numpy as np
import pytest

from bg_removal_service import model_loader
from bg_removal_service.errors import ModelUnavailable
from bg_removal_service.model_loader import ModelSession, OnnxModelRuntime, select_providers
from bg_removal_service.preprocessing import MODNET_PREPROCESS_CONFIG

from conftest import CountingFactory, FakeRuntime


def test_concurrent_first_calls_construct_runtime_once() -> None:
    runtime = FakeRuntime()
    factory = CountingFactory(runtime, delay=0.05)
    session = ModelSession(factory)

    async def scenario():
        return await asyncio.gather(*(session.ensure_ready() for _ in range(10)))

    results = asyncio.run(scenario())

    assert factory.calls == 1
    assert all(r is runtime for r in results)
    assert session.ready
    assert session.runtime is runtime


def test_ready_session_does_not_reconstruct() -> None:
    factory = CountingFactory(FakeRuntime())
    session = ModelSession(factory)

    async def scenario():
        await session.ensure_ready()
        await session.ensure_ready()

    asyncio.run(scenario())
    assert factory.calls == 1


def test_failed_provisioning_is_retried_on_next_call() -> None:
    runtime = FakeRuntime()
    factory = CountingFactory(runtime, failures=1)
    session = ModelSession(factory)

    with pytest.raises(ModelUnavailable):
        asyncio.run(session.ensure_ready())
    assert not session.ready

    assert asyncio.run(session.ensure_ready()) is runtime
    assert session.ready
    assert factory.calls == 2


def test_concurrent_waiters_share_one_failure() -> None:
    factory = CountingFactory(FakeRuntime(), failures=1, delay=0.05)
    session = ModelSession(factory)

    async def scenario():
        return await asyncio.gather(
            *(session.ensure_ready() for _ in range(5)), return_exceptions=True
        )

    results = asyncio.run(scenario())

    assert factory.calls == 1
    assert all(isinstance(r, ModelUnavailable) for r in results)
    assert not session.ready


def test_cancelled_caller_does_not_abort_shared_construction() -> None:
    runtime = FakeRuntime()
    factory = CountingFactory(runtime, delay=0.05)
    session = ModelSession(factory)

    async def scenario():
        first = asyncio.ensure_future(session.ensure_ready())
        second = asyncio.ensure_future(session.ensure_ready())
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        return await second

    assert asyncio.run(scenario()) is runtime
    assert factory.calls == 1


def test_cancelled_construction_is_not_left_in_flight() -> None:
    runtime = FakeRuntime()
    factory = CountingFactory(runtime, delay=0.1)
    session = ModelSession(factory)

    async def scenario():
        waiter = asyncio.ensure_future(session.ensure_ready())
        await asyncio.sleep(0.01)
        session._inflight.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert session._inflight is None
        assert not session.ready
        return await session.ensure_ready()

    assert asyncio.run(scenario()) is runtime
    assert factory.calls == 2


def test_select_providers_prefers_accelerators() -> None:
    available = ["CPUExecutionProvider", "CUDAExecutionProvider", "AzureExecutionProvider"]
    assert select_providers(available) == ["CUDAExecutionProvider", "CPUExecutionProvider"]
    assert select_providers([]) == ["CPUExecutionProvider"]


class _FakeOrtSession:
    def __init__(self, path=None, providers=None):
        self.path = path
        self.providers = providers
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input")]

    def get_providers(self):
        return self.providers or ["CPUExecutionProvider"]

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return [np.zeros((1, 1, 2, 2), dtype=np.float32)]


def test_onnx_runtime_feeds_the_model_input() -> None:
    session = _FakeOrtSession()
    runtime = OnnxModelRuntime(session, MODNET_PREPROCESS_CONFIG)
    tensor = np.zeros((1, 3, 1024, 1024), dtype=np.float32)

    out = runtime.infer(tensor)

    assert out.shape == (1, 1, 2, 2)
    assert list(session.feeds[0]) == ["input"]
    assert session.feeds[0]["input"] is tensor


def test_load_modnet_runtime_fetches_fp32_export_from_hub(monkeypatch) -> None:
    downloads = []

    def fake_download(repo_id, filename):
        downloads.append((repo_id, filename))
        return "/cache/model.onnx"

    monkeypatch.setattr(model_loader, "hf_hub_download", fake_download)
    monkeypatch.setattr(model_loader.ort, "InferenceSession", _FakeOrtSession)

    runtime = model_loader.load_modnet_runtime()

    assert downloads == [("Xenova/modnet", "onnx/model.onnx")]
    assert runtime.preprocess_config is MODNET_PREPROCESS_CONFIG
    assert runtime._session.path == "/cache/model.onnx"
