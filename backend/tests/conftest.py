"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.chat.dependencies import build_chat_core, set_chat_core
from app.config import AppConfig, set_config
from app.main import app


@pytest.fixture(autouse=True)
def chat_core():
    """Give every test its own stores so state never leaks between tests."""
    config = AppConfig()
    set_config(config)
    core = build_chat_core(config)
    set_chat_core(core)
    yield core
    set_chat_core(None)
    set_config(None)


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)
