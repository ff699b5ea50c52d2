import sys
from contextlib import ExitStack
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.main import create_app  # noqa: E402
from backend.app.settings import Settings  # noqa: E402
from backend.tests.upstreams import RecordingUpstream, make_settings  # noqa: E402


@pytest.fixture
def build_client():
    """Factory: build_client(settings, completion=..., places=...) -> TestClient."""
    with ExitStack() as stack:

        def _build(
            settings: Settings | None = None,
            *,
            completion: RecordingUpstream | None = None,
            places: RecordingUpstream | None = None,
        ) -> TestClient:
            app = create_app(
                settings or make_settings(),
                completion_transport=completion.transport if completion else None,
                places_transport=places.transport if places else None,
            )
            return stack.enter_context(TestClient(app))

        yield _build
