import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

project_root = str(Path(__file__).resolve().parents[1])
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from photo_catalog.core.exceptions import UpstreamFailure  # noqa: E402

TEST_JWT_SECRET = "test-secret-for-photo-catalog-0123456789"


class FakeStorage:
    """In-memory stand-in for the S3 adapter; records every call."""

    def __init__(self):
        self.write_grants = []
        self.read_grants = []
        self.deleted = []
        self.fail_deletes = False
        self.fail_writes = False
        self.healthy = True

    async def mint_write_grant(self, key, content_type, ttl):
        if self.fail_writes:
            raise UpstreamFailure("Object storage unavailable")
        self.write_grants.append((key, content_type, ttl))
        return f"https://storage.test/{key}?op=put&expires={int(ttl.total_seconds())}"

    async def mint_read_grant(self, key, ttl):
        self.read_grants.append((key, ttl))
        return f"https://storage.test/{key}?op=get&expires={int(ttl.total_seconds())}&n={len(self.read_grants)}"

    async def delete_object(self, key):
        if self.fail_deletes:
            raise UpstreamFailure("Object storage unavailable")
        self.deleted.append(key)

    async def ping(self):
        return self.healthy


def _prepare_client(tmp_path, monkeypatch, *, rate_limit="1000", max_size=str(50 * 1024 * 1024), **env):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("ENABLE_CLEANER", "false")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", rate_limit)
    monkeypatch.setenv("MAX_FILE_SIZE_BYTES", max_size)
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "")
    monkeypatch.setenv("REDIS_URL", "")
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    # Reload modules so configuration changes take effect cleanly.
    # models and core.exceptions stay loaded: tables and error classes must keep their identity.
    module_order = [
        "photo_catalog.config",
        "photo_catalog.db",
        "photo_catalog.storage",
        "photo_catalog.api.deps",
        "photo_catalog.api.routes",
        "photo_catalog.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["photo_catalog.main"]
    deps = sys.modules["photo_catalog.api.deps"]

    storage = FakeStorage()
    main.app.dependency_overrides[deps.get_storage] = lambda: storage

    test_client = TestClient(main.app)
    test_client.storage = storage  # type: ignore[attr-defined]
    test_client.auth_headers = lambda owner: {  # type: ignore[attr-defined]
        "Authorization": f"Bearer {deps.identity_verifier.issue(owner)}"
    }
    return test_client


@pytest.fixture
def prepare_client(tmp_path, monkeypatch):
    def _factory(**kwargs):
        return _prepare_client(tmp_path, monkeypatch, **kwargs)

    return _factory


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c


@pytest.fixture
def initiate():
    def _initiate(client, owner, filename="a.jpg", content_type="image/jpeg", size=1024, **extra):
        body = {"filename": filename, "contentType": content_type, "fileSize": size}
        body.update(extra)
        return client.post("/uploads", json=body, headers=client.auth_headers(owner))

    return _initiate
