from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from batchflow_api.engine import Engine, build_engine
from batchflow_api.lifecycle import TaskLifecycleManager
from batchflow_api.settings import Settings
from batchflow_api.store import InMemoryStore


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "ok") -> None:
        self.status_code = status_code
        self.text = text


class RecordingPost:
    """Stand-in for httpx.post that records calls and replays scripted status codes or exceptions."""

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._outcomes = list(outcomes or [])

    def __call__(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        outcome = self._outcomes.pop(0) if self._outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(status_code=outcome, text=f"status {outcome}")


@pytest.fixture
def fake_post(monkeypatch: pytest.MonkeyPatch) -> Callable[..., RecordingPost]:
    def install(outcomes: list[Any] | None = None) -> RecordingPost:
        post = RecordingPost(outcomes)
        monkeypatch.setattr("batchflow_api.webhooks.httpx.post", post)
        return post

    return install


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch) -> Engine:
    fresh = build_engine(Settings(webhook_signing_secret="fallback-secret"))
    monkeypatch.setattr("batchflow_api.main.engine", fresh)
    return fresh


@pytest.fixture
def client(engine: Engine) -> TestClient:
    from batchflow_api.main import app

    return TestClient(app)


@pytest.fixture
def lifecycle() -> TaskLifecycleManager:
    return TaskLifecycleManager(InMemoryStore())
