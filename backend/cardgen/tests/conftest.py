from collections.abc import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from cardgen.api.deps import get_generator
from cardgen.main import app
from cardgen.services.generation import FlashcardGenerator
from cardgen.tests.utils.upstream import RecordingSleep, Upstream, make_client


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    # no lifespan: the generator under test is injected through the override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def use_upstream():
    """Point the generate endpoint at a scripted upstream."""

    def _use(responses, max_retries: int = 2, **config) -> Upstream:
        upstream = Upstream(responses)
        generator = FlashcardGenerator(
            make_client(upstream, sleep=RecordingSleep(), **config),
            AsyncMock(),
            max_retries=max_retries,
        )
        app.dependency_overrides[get_generator] = lambda: generator
        return upstream

    return _use
