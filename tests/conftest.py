import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from synexa_gateway.auth import create_access_token
from synexa_gateway.config import Settings
from synexa_gateway.database import make_session_factory
from synexa_gateway.llm.base import LLMClient
from synexa_gateway.main import create_app
from synexa_gateway.models import Account, Workspace
from synexa_gateway.repository import SqlAlchemyAccountRepository
from synexa_gateway.services import build_services

TODAY = datetime(2026, 3, 10, 12, 0, 0)


class FakeClock:
    """Settable replacement for datetime.utcnow."""

    def __init__(self, now: datetime = TODAY):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLLMClient(LLMClient):
    """In-memory LLMClient; records calls and can be told to fail or stall."""

    def __init__(
        self,
        reply="Hello from the model",
        chunks=("Hel", "lo ", "there"),
        models=("gpt-4o", "gpt-4o-mini", "dall-e-3"),
        image_url="https://images.example.com/generated.png",
    ):
        self.reply = reply
        self.chunks = list(chunks)
        self.models = list(models)
        self.image_url = image_url
        self.error = None
        self.stream_error = None
        self.delay = 0.0
        self.calls = []

    async def chat(self, messages, model, temperature, stream=False, max_tokens=None):
        self.calls.append({"kind": "chat", "model": model, "messages": messages,
                           "temperature": temperature, "stream": stream})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if stream:
            return self._stream()
        return self.reply

    async def _stream(self):
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    async def generate_image(self, prompt, model, size):
        self.calls.append({"kind": "image", "model": model, "prompt": prompt, "size": size})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.image_url

    async def list_models(self):
        return list(self.models)


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        ai_provider="openai",
        openai_api_key="sk-test-0000000000000000",
        jwt_secret="test-secret",
        rate_limit_requests_per_minute=1000,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def session_factory(settings):
    return make_session_factory(settings.database_url)


@pytest.fixture
def repository(session_factory):
    return SqlAlchemyAccountRepository(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def services(settings, repository, fake_llm, clock):
    return build_services(settings, llm_client=fake_llm, repository=repository, clock=clock)


@pytest.fixture
def client(services):
    app = create_app(services=services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def demo_services(settings, repository, clock):
    return build_services(settings, llm_client=None, repository=repository, clock=clock)


@pytest.fixture
def demo_client(demo_services):
    app = create_app(services=demo_services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_account(session_factory, clock):
    """Insert an account row directly."""
    def _make(account_id="user-1", plan="FREE", credits=100, chat=0, image=0, video=0, reset_at=None):
        db = session_factory()
        try:
            db.add(Account(
                id=account_id,
                plan=plan,
                credits=credits,
                daily_usage_chat=chat,
                daily_usage_image=image,
                daily_usage_video=video,
                daily_usage_reset_at=reset_at or clock.now,
            ))
            db.commit()
        finally:
            db.close()
        return account_id
    return _make


@pytest.fixture
def make_workspace(session_factory):
    def _make(workspace_id, account_id="user-1", name="Project", created_at=None):
        db = session_factory()
        try:
            db.add(Workspace(
                id=workspace_id,
                account_id=account_id,
                name=name,
                created_at=created_at or datetime(2026, 1, 1),
            ))
            db.commit()
        finally:
            db.close()
        return workspace_id
    return _make


@pytest.fixture
def auth_headers(settings):
    def _headers(account_id="user-1"):
        token = create_access_token({"sub": account_id}, settings)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def token_for(settings):
    def _token(account_id="user-1"):
        return create_access_token({"sub": account_id}, settings)
    return _token
