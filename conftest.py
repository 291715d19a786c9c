"""
Shared fixtures: an isolated config per test (temp SQLite file, no env
overrides) and a TestClient whose AI service is an httpx.MockTransport.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from scanhub.server import create_app

AI_URL = "http://ai.test"


def make_cfg(tmp_path, **sections):
    cfg = {
        "app": {
            "dev_mode": False,
            "persistence": {"sqlite_path": str(tmp_path / "scanhub.sqlite"), "recreate_on_boot": False},
        },
        "ai": {"server_url": AI_URL, "timeout_s": 2, "policy": "always"},
        "devices": {"stale_after_s": 60, "capability_marker": "AI"},
        "saved_scans": {"duplicate_window_s": 300, "allowed_sources": ["ESP32"]},
        "realtime": {"replay_buffer_size": 50, "subscriber_queue_size": 16},
    }
    for name, values in sections.items():
        cfg.setdefault(name, {}).update(values)
    return cfg


def ai_product_handler(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={
        "success": True,
        "title": f"Product {body['barcodeData']}",
        "category": "Beverages",
        "description": "Carbonated soft drink",
        "description_short": "Soft drink",
        "country": "Germany",
    })


def ai_down_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    for name in ("SCANHUB_DB_PATH", "AI_SERVER_URL", "SCANHUB_DEV_MODE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cfg(tmp_path):
    return make_cfg(tmp_path)


@pytest.fixture
def ai_handler():
    return ai_product_handler


@pytest.fixture
def app(cfg, ai_handler):
    return create_app(cfg, ai_transport=httpx.MockTransport(ai_handler))


@pytest.fixture
def client(app):
    # one portal for the whole test so HTTP calls and WebSocket sessions share a loop
    with TestClient(app) as c:
        yield c
