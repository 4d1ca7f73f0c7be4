"""
依存性注入のためのヘルパー関数
"""

from fastapi import Depends

from ..config import settings
from ..services.gemini import GeminiProvider
from ..services.quota import QuotaStore, QuotaTracker, create_quota_store
from ..services.transformer import ProviderFactory, TransformOrchestrator

# グローバル日次カウンタストア（Redis 未設定時はプロセス内）
_quota_store: QuotaStore | None = None


def initialize_quota_store() -> QuotaStore:
    """日次カウンタストアを初期化"""
    global _quota_store
    _quota_store = create_quota_store(settings.redis_connection_url)
    return _quota_store


def get_quota_store() -> QuotaStore:
    """日次カウンタストアを取得
    この関数は依存性注入のために使用されます
    """
    if _quota_store is None:
        return initialize_quota_store()
    return _quota_store


def get_quota_tracker(store: QuotaStore = Depends(get_quota_store)) -> QuotaTracker:
    return QuotaTracker(
        store,
        max_per_day=settings.daily_request_limit,
        enabled=settings.quota_enabled,
    )


def get_provider_factory() -> ProviderFactory:
    # APIキー未設定のエラーは入力検証の後で発生させるため、生成は遅延させる
    return GeminiProvider


def get_orchestrator(
    quota: QuotaTracker = Depends(get_quota_tracker),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> TransformOrchestrator:
    return TransformOrchestrator(quota=quota, provider_factory=provider_factory)
