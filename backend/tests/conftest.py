"""Shared fixtures: isolated in-memory queue, sample reports and photos, webhook capture."""
import base64
import io
import json
import os
from datetime import datetime, timedelta, timezone

# Keep the module-level engine off the working directory
os.environ.setdefault("LOCAL_DATABASE_URL", "sqlite://")
os.environ.setdefault("REMOTE_MOCK_MODE", "true")

import httpx
import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aegis.models.base import Base
import aegis.models.report  # noqa: F401, ensures LocalReport is registered
from aegis.services.alert_dispatcher import AlertDispatcher
from aegis.services.record_store import IncidentRecord, RecordStore

WEBHOOK_URL = "https://hooks.example.test/aegis"
BASE_TIME = datetime(2025, 11, 20, 8, 0, tzinfo=timezone.utc)


@pytest.fixture()
def session_factory():
    """Provide an isolated in-memory SQLite database for each test."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    yield factory
    test_engine.dispose()


@pytest.fixture()
def store(session_factory):
    return RecordStore(session_factory=session_factory)


@pytest.fixture()
def make_record():
    counter = {"n": 0}

    def _make(**overrides) -> IncidentRecord:
        counter["n"] += 1
        fields = dict(
            type="Flood",
            severity="Medium",
            latitude=6.9344,
            longitude=79.8428,
            timestamp=BASE_TIME + timedelta(minutes=counter["n"]),
            description=f"Report {counter['n']}",
        )
        fields.update(overrides)
        return IncidentRecord(**fields)

    return _make


@pytest.fixture()
def make_photo():
    def _make(width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> str:
        colors = {"RGB": (200, 40, 40), "RGBA": (200, 40, 40, 255), "L": 128}
        img = Image.new(mode, (width, height), colors[mode])
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        mime = "image/png" if fmt == "PNG" else "image/jpeg"
        return f"data:{mime};base64," + base64.b64encode(buf.getvalue()).decode("ascii")

    return _make


@pytest.fixture()
def webhook():
    """AlertDispatcher wired to a mock webhook; returns (dispatcher, captured payloads)."""
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(204)

    dispatcher = AlertDispatcher(
        webhook_url=WEBHOOK_URL,
        username="Aegis Field Alert",
        timeout=1,
        transport=httpx.MockTransport(handler),
    )
    return dispatcher, captured
