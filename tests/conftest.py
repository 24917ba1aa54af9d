import pytest
from fastapi.testclient import TestClient

from advisor.core.memory import SessionStore
from app.main import create_app
from config.settings import Settings
from tests.fakes import FakeLLM


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions")


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def settings(store):
    return Settings(google_api_key="test-key", sessions_dir=str(store.root))


@pytest.fixture
def client(settings, store, llm):
    return TestClient(create_app(settings, llm=llm, store=store))
