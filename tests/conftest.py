"""
Pytest configuration and fixtures for Image Convert Backend tests.
"""

import os
import shutil
import tempfile
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
os.environ["CONVERTER_DATA_DIR"] = tempfile.mkdtemp(prefix="converter_test_data_")
os.environ["CONVERTER_MASTER_KEY"] = "test-master-key-12345"
os.environ["S3_BUCKET_NAME"] = "local"

from image_convert_backend.configuration import make_runtime_config
from image_convert_backend.database import JobDatabase
from image_convert_backend.errors import UpstreamError
from image_convert_backend.interfaces import StoredObject
from image_convert_backend.job_manager import JobManager
from image_convert_backend.main import app


class InMemoryStorage:
    """Storage fake that keeps uploaded documents in a dict."""

    mode = "memory"

    def __init__(self):
        self.objects = {}

    def put(self, data, suggested_name, content_type=None):
        name = f"{len(self.objects) + 1}-{suggested_name}"
        self.objects[name] = (data, content_type)
        return StoredObject(name=name, url=f"https://files.example.test/{name}", storage_id=f"converted/{name}")


class FailingStorage:
    mode = "memory"

    def __init__(self, message="bucket unreachable"):
        self.message = message

    def put(self, data, suggested_name, content_type=None):
        raise RuntimeError(self.message)


class RecordingMaterials:
    """Materials fake that remembers every registration."""

    def __init__(self):
        self.calls = []

    def register(self, artifact, destination, owner):
        self.calls.append((artifact, destination, owner))
        return f"material-{len(self.calls)}"


class FailingMaterials:
    def __init__(self, message="Material validation failed: class code is required"):
        self.message = message

    def register(self, artifact, destination, owner):
        raise UpstreamError(self.message)


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Remove the app's data directory after the session."""
    data_dir = os.environ["CONVERTER_DATA_DIR"]
    yield Path(data_dir)
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def master_key():
    """Return the master API key for admin operations."""
    return "test-master-key-12345"


def _create_key(client, master_key, owner_id, role="educator"):
    response = client.post(
        "/admin/keys",
        json={"owner_id": owner_id, "display_name": owner_id.title(), "role": role},
        headers={"X-API-Key": master_key},
    )
    assert response.status_code == 201
    return response.json()["api_key"]


@pytest.fixture
def api_key(client, master_key):
    """Create an educator API key."""
    return _create_key(client, master_key, "educator-one")


@pytest.fixture
def other_api_key(client, master_key):
    """Create an API key for a second educator."""
    return _create_key(client, master_key, "educator-two")


@pytest.fixture
def admin_api_key(client, master_key):
    return _create_key(client, master_key, "school-admin", role="admin")


def make_image_bytes(size=(40, 30), color=(200, 30, 30), fmt="JPEG", mode="RGB"):
    """Encode a solid-colour image with Pillow."""
    buffer = BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes()


@pytest.fixture
def png_bytes():
    """Transparent PNG, exercises alpha flattening."""
    return make_image_bytes(size=(64, 48), color=(0, 128, 255, 100), fmt="PNG", mode="RGBA")


@pytest.fixture
def corrupt_bytes():
    """Bytes declared as an image that no decoder accepts."""
    return b"this is definitely not an image" * 10


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def materials():
    return RecordingMaterials()


@pytest.fixture
def runtime_config(tmp_path):
    return make_runtime_config({"paths": {"data_dir": str(tmp_path)}})


@pytest.fixture
def job_store(tmp_path):
    return JobDatabase(tmp_path / "jobs.db")


@pytest.fixture
def make_manager(runtime_config, job_store, storage, materials):
    """Factory for job managers wired to fakes; all are shut down after the test."""
    managers = []

    def _make(storage_backend=None, materials_backend=None, store=None):
        manager = JobManager(
            job_store=store or job_store,
            storage=storage_backend or storage,
            materials=materials_backend or materials,
            config=runtime_config,
            max_workers=2,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown(wait=True)


@pytest.fixture
def manager(make_manager):
    return make_manager()


def stage(manager, files):
    """Stage (original_name, data, mime_type) tuples in a fresh staging area."""
    staged = manager.new_staging_area()
    for original_name, data, mime_type in files:
        staged.add_bytes(original_name, mime_type, data)
    return staged
