import os
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

# テスト時は先に最低限の環境変数を設定（app.main を import する前に行う）
os.environ.setdefault("DEBUG", "true")

SAMPLE_PAYLOAD = "iVBORw0KGgoAAAANSUhEUgAAAAE="
SAMPLE_IMAGE = f"data:image/png;base64,{SAMPLE_PAYLOAD}"
TRANSFORMED_IMAGE = "dHJhbnNmb3JtZWQ="


class FakeProvider:
    """外部依存(Gemini)を使わないテスト用スタブ

    インスタンス自体をプロバイダのファクトリとして渡す
    """

    def __init__(self, result: str = TRANSFORMED_IMAGE, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[tuple[str, str, str]] = []
        self.attempts = 0

    def __call__(self) -> "FakeProvider":
        return self

    async def transform_image(
        self, image_data: str, emoji: str, mime_type: str = "image/jpeg"
    ) -> str:
        self.calls.append((image_data, emoji, mime_type))
        self.attempts = 1
        if self.error is not None:
            raise self.error
        return self.result


@asynccontextmanager
async def dummy_lifespan(app):
    # 起動時初期化を無効化
    yield


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def quota_store():
    from app.core.services.quota import InMemoryQuotaStore

    return InMemoryQuotaStore()


@pytest.fixture()
def app(monkeypatch, fake_provider, quota_store):
    from app.core.config import settings

    # TrustedHostMiddleware を避けるため debug を有効化
    monkeypatch.setattr(settings, "debug", True)
    monkeypatch.setattr(settings, "quota_enabled", True)
    monkeypatch.setattr(settings, "daily_request_limit", 5)

    # 起動時の実初期化を無効化
    import app.main as main_mod

    monkeypatch.setattr(main_mod, "lifespan", dummy_lifespan)
    from app.main import create_app

    application = create_app()

    # 依存関係をスタブに差し替え
    from app.core.web.dependencies import get_provider_factory, get_quota_store

    application.dependency_overrides[get_provider_factory] = lambda: fake_provider
    application.dependency_overrides[get_quota_store] = lambda: quota_store

    return application


@pytest.fixture()
def client(app):
    return TestClient(app)
