from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Any

import pytest
from fastapi.testclient import TestClient

from agent_runtime.api.main import create_app
from agent_runtime.config.settings import Settings
from agent_runtime.storage.memory import InMemoryTurnStorage
from agent_runtime.turn.messages import TurnMessage
from agent_runtime.turn.model_client import ModelChunk


class ScriptedModelClient:
    """Test-only model double: one scripted generation per call, the last one repeats."""

    def __init__(self, generations: list[list[ModelChunk]]) -> None:
        self.generations = generations
        self.calls: list[list[TurnMessage]] = []

    def stream_chat(
        self,
        messages: Sequence[TurnMessage],
        tools: Sequence[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> Iterator[ModelChunk]:
        self.calls.append(list(messages))
        index = min(len(self.calls), len(self.generations)) - 1
        yield from self.generations[index]


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="", openai_api_key="", llm_provider="none", max_steps=4)


@pytest.fixture
def storage() -> InMemoryTurnStorage:
    return InMemoryTurnStorage()


@pytest.fixture
def make_client(settings: Settings, storage: InMemoryTurnStorage) -> Iterator[Callable[..., TestClient]]:
    clients: list[TestClient] = []

    def _make(model_client: ScriptedModelClient | None = None) -> TestClient:
        app = create_app(storage=storage, settings_override=settings, model_client=model_client)
        client = TestClient(app)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def scripted_model() -> type[ScriptedModelClient]:
    return ScriptedModelClient
