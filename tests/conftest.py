"""Shared fixtures for the photo migration tests."""
import io
import os
import threading
from typing import Dict, List

# Settings require these; the module-level engine is unused by the tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker
from app.core.errors import SourceFetchError
from app.core.workflow import RunConfig
from app.db.item_store import ItemStore
from app.db.session import Base, make_engine
from app.pipeline.base import SourceStore
from app.pipeline.pipeline import TransformPipeline
from app.pipeline.targets import LocalTargetStore


def make_jpeg(width: int = 64, height: int = 48, color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="JPEG", quality=90)
    return buf.getvalue()


class FakeSource(SourceStore):
    """In-memory source store with optional failures and a start gate."""

    def __init__(self, assets: Dict[str, bytes] | None = None):
        self.assets = dict(assets or {})
        self.failures: Dict[str, Exception] = {}
        self.gate: threading.Event | None = None
        self.fetched: List[str] = []
        self.active = 0
        self.max_active = 0
        self._cond = threading.Condition()

    def fetch(self, source_ref: str) -> bytes:
        with self._cond:
            self.fetched.append(source_ref)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self._cond.notify_all()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if source_ref in self.failures:
                raise self.failures[source_ref]
            if source_ref not in self.assets:
                raise SourceFetchError(f"source asset not found: {source_ref}", transient=False)
            return self.assets[source_ref]
        finally:
            with self._cond:
                self.active -= 1

    def wait_started(self, n: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.fetched) >= n, timeout=timeout)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def item_store(db):
    return ItemStore(db)


@pytest.fixture
def target_store(tmp_path):
    return LocalTargetStore(tmp_path / "media", prefix="photos/hd")


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def pipeline(source, target_store):
    return TransformPipeline(source=source, target=target_store)


@pytest.fixture
def config():
    return RunConfig(batch_size=10, concurrency=2, quality=70, max_width=32)


@pytest.fixture
def register(item_store, source):
    """Register ``n`` items whose source bytes are valid JPEGs."""
    def _register(n: int, prefix: str = "photo") -> List[str]:
        refs = [f"{prefix}-{i:03d}" for i in range(n)]
        for ref in refs:
            source.assets[ref] = make_jpeg()
        item_store.register({"source_ref": ref, "file_name": f"{ref}.jpg"} for ref in refs)
        return refs
    return _register
