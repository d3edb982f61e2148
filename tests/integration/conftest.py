from __future__ import annotations

import os
import uuid

import pytest

from agent_runtime.storage.postgres import PostgresTurnStorage


@pytest.fixture
def postgres_storage() -> PostgresTurnStorage:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and AGENT_RUNTIME_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("AGENT_RUNTIME_DATABASE_URL")
    if not database_url:
        pytest.skip("AGENT_RUNTIME_DATABASE_URL is required for integration tests.")
    storage = PostgresTurnStorage(database_url)
    storage.migrate()
    return storage


@pytest.fixture
def session_id() -> str:
    return f"it-{uuid.uuid4()}"
