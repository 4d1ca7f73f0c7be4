"""
日次リクエスト上限モジュール
クライアント（IP）ごと・日ごとのリクエスト数を外部KVストアで管理する

カウンタの読み書きはベストエフォートで、ストア障害時は制限しない（フェイルオープン）。
"""

import datetime as dt
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Protocol

from redis import Redis

from ..errors import AppError, ErrorKind


logger = logging.getLogger(__name__)

# 優先順に参照する転送元IPヘッダー
CLIENT_IP_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")
UNKNOWN_IDENTITY = "unknown"
KEY_PREFIX = "rate_limit"


class QuotaStore(Protocol):
    name: str

    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    def ping(self) -> bool: ...


class RedisQuotaStore:
    """Redis をバックエンドとするカウンタストア（複数プロセスで共有）"""

    name = "redis"

    def __init__(self, client: Redis):
        self.client = client

    def get(self, key: str) -> str | None:
        value = self.client.get(key)
        return None if value is None else str(value)

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception:
            return False


class InMemoryQuotaStore:
    """プロセス内カウンタ（Redis 未設定時・テスト用）"""

    name = "memory"

    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= time.monotonic():
                del self._data[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def ping(self) -> bool:
        return True


def create_quota_store(url: str | None) -> QuotaStore:
    """Redis に接続できればそれを、できなければプロセス内ストアを返す"""
    if url:
        try:
            client = Redis.from_url(url, decode_responses=True)
            client.ping()
            return RedisQuotaStore(client)
        except Exception as e:
            logger.warning(f"Redisに接続できないためプロセス内カウンタを使用します: {e}")
    return InMemoryQuotaStore()


def resolve_identity(headers: Mapping[str, str]) -> str:
    """転送元IPヘッダーからクライアント識別子を決定する"""
    for name in CLIENT_IP_HEADERS:
        value = (headers.get(name) or "").strip()
        if not value:
            continue
        if name == "X-Forwarded-For":
            # 先頭がクライアント、以降はプロキシ
            value = value.split(",", 1)[0].strip()
        if value:
            return value
    return UNKNOWN_IDENTITY


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# UTCの翌日0時までの残秒数を返す
def seconds_until_next_utc_midnight(now: dt.datetime) -> int:
    next_day = (now + dt.timedelta(days=1)).date()
    next_midnight = dt.datetime.combine(
        next_day, dt.time(0, 0, 0), tzinfo=dt.timezone.utc
    )
    return max(1, int((next_midnight - now).total_seconds()))


class QuotaTracker:
    """日次上限の判定と使用回数の記録

    判定（check_and_reserve）と記録（commit）は分離されており、記録は
    変換が成功した後にのみ行う。読み取りと書き込みはアトミックではないため、
    同一クライアントの同時リクエストでは上限をわずかに超える場合がある。
    """

    def __init__(
        self,
        store: QuotaStore,
        max_per_day: int = 5,
        enabled: bool = True,
        now: Callable[[], dt.datetime] | None = None,
    ):
        self.store = store
        self.max_per_day = max_per_day
        self.enabled = enabled
        self._now = now or _utc_now

    def _is_exempt(self, identity: str) -> bool:
        # IPが特定できない場合は制限しない
        return not self.enabled or identity == UNKNOWN_IDENTITY

    def quota_key(self, identity: str, day: dt.date | None = None) -> str:
        day = day or self._now().date()
        return f"{KEY_PREFIX}:{identity}:{day.strftime('%Y-%m-%d')}"

    def current_count(self, identity: str) -> int:
        return self._read_count(self.quota_key(identity))

    def _read_count(self, key: str) -> int:
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning(f"日次カウンタの読み取りに失敗しました key={key}: {e}")
            return 0
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError):
            return 0

    def check_and_reserve(self, identity: str) -> None:
        """上限に達している場合は RateLimitExceeded を送出する"""
        if self._is_exempt(identity):
            return
        if self.current_count(identity) >= self.max_per_day:
            raise AppError(
                ErrorKind.RATE_LIMIT_EXCEEDED,
                f"Rate limit exceeded. You can make {self.max_per_day} requests "
                "per day. Try again tomorrow.",
            )

    def commit(self, identity: str) -> None:
        """使用回数を1増やす（失敗してもリクエストは失敗させない）"""
        if self._is_exempt(identity):
            return
        now = self._now()
        key = self.quota_key(identity, now.date())
        new_count = self._read_count(key) + 1
        try:
            ttl = seconds_until_next_utc_midnight(now)
            self.store.put(key, str(new_count), ttl_seconds=ttl)
        except Exception as e:
            logger.warning(f"日次カウンタの更新に失敗しました key={key}: {e}")
