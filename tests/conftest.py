from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from youtube_fakes import FakeYouTube

from trendfeed.config import load_settings
from trendfeed.dependencies import (
    ServiceContainer,
    build_container,
    get_container,
    reset_cached_dependencies,
)
from trendfeed.main import create_app
from trendfeed.repositories.database import Database
from trendfeed.telemetry import TelemetryClient


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def fake_youtube() -> FakeYouTube:
    return FakeYouTube()


@pytest.fixture
def container(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_youtube: FakeYouTube,
) -> ServiceContainer:
    data_dir = tmp_path / "runtime-data"
    monkeypatch.setenv("TRENDFEED_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TRENDFEED_ENABLE_SCHEDULER", "0")
    monkeypatch.delenv("TRENDFEED_SERVER_API_KEYS", raising=False)
    return build_container(
        load_settings(),
        telemetry=TelemetryClient.disabled(),
        client_factory=fake_youtube.factory,
    )


@pytest.fixture
def client(
    container: ServiceContainer,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[TestClient]:
    monkeypatch.setenv("TRENDFEED_TELEMETRY_SINK", "none")
    reset_cached_dependencies()

    app = create_app()
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
