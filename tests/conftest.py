import os
os.environ.setdefault("STORAGE_BACKEND", "local")  # nooit per ongeluk naar echte S3
os.environ.setdefault("LOG_LEVEL", "WARNING")

import hashlib

import pytest
from fastapi.testclient import TestClient

from bigfile.main import app
from bigfile.routers.chunked import get_coordinator
from bigfile.services.storage import LocalStorage, get_storage
from bigfile.services.upload_coordinator import UploadCoordinator

STAGING = "temp"
DEST = "bigfile"  # settings.S3_BUCKET default


class FakeClock:
    """Monotone klok die alleen vooruit gaat als er 'geslapen' wordt."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(base_path=str(tmp_path / "store"))


@pytest.fixture
def coordinator(storage):
    return UploadCoordinator(
        storage,
        STAGING,
        merge_wait_seconds=0.5,
        merge_poll_interval=0.01,
        sleep=lambda s: None,
    )


@pytest.fixture
def client(storage, coordinator):
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def payload():
    """12 KB testbestand in 3 chunks + md5 fingerprint."""
    data = os.urandom(12 * 1024)
    chunks = [data[i:i + 4096] for i in range(0, len(data), 4096)]
    return data, chunks, hashlib.md5(data).hexdigest()
