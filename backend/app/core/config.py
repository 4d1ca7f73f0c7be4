"""
設定管理モジュール
アプリケーションの設定を一元管理する
"""

import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    アプリケーション設定クラス
    pydantic_settingsを使用することで、環境変数から自動的に設定を読み込み、
    型チェックとバリデーションを行う
    """

    app_name: str = "emobanana API"
    app_version: str = "0.1.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1

    # ==== Gemini設定 ====
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash-image-preview"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: float = 60.0
    # 1回目を含む総試行回数（コンテンツフィルタ時のみ再試行）
    gemini_max_attempts: int = 3
    # 0 の場合は待機なしで再送する
    gemini_retry_jitter_seconds: float = 0.0

    # シークレットファイルの配置ディレクトリ（Docker secrets 等）
    secrets_dir: str = "/run/secrets"

    # ==== 画像入力設定 ====
    max_image_size: int = 10 * 1024 * 1024  # 10MB
    allowed_image_types: str = "image/jpeg,image/jpg,image/png,image/webp"
    # data URL 以外（素の base64）を受け付けるか
    allow_bare_base64: bool = False

    # ==== 日次リクエスト上限 ====
    daily_request_limit: int = 5
    quota_enabled: bool = True

    # ==== Redis設定 ====
    redis_password: str | None = None
    redis_url: str | None = None

    # 本番環境用セキュリティ設定
    allowed_origins: str | None = None
    allowed_hosts: str = "localhost,127.0.0.1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def secrets_path(self) -> Path:
        """シークレットディレクトリのパスを取得"""
        return Path(self.secrets_dir)

    @property
    def allowed_image_types_list(self) -> list[str]:
        """許可する画像MIMEタイプのリストを取得"""
        return [
            t.strip().lower() for t in self.allowed_image_types.split(",") if t.strip()
        ]

    @property
    def allowed_origins_list(self) -> list[str]:
        raw = os.getenv("ALLOWED_ORIGINS") or (self.allowed_origins or "")
        items = [o.strip() for o in raw.split(",") if o.strip()]
        if self.debug:
            return items or ["*"]
        # production: wildcard is not allowed
        if "*" in items:
            raise ValueError("Wildcard '*' is not allowed in production")
        return items

    @property
    def allowed_hosts_list(self) -> list[str]:
        """許可するホストのリストを取得"""
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    @property
    def redis_connection_url(self) -> str | None:
        """Redis接続URLを取得（パスワード対応）

        どちらも未設定の場合は None を返し、プロセス内カウンタで代替する
        """
        if self.redis_url:
            return self.redis_url

        # REDIS_URLが未設定の場合、パスワードから構築
        if self.redis_password:
            return f"redis://:{self.redis_password}@redis:6379/0"
        return None

    def _read_secret(self, name: str) -> str | None:
        secret_file = self.secrets_path / name
        try:
            if secret_file.is_file():
                return secret_file.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None
        return None

    def get_secret_or_var(self, name: str) -> str | None:
        """シークレット → 通常の設定値 の順で値を解決する

        シークレットは `secrets_dir/<NAME>` のファイル、
        通常の設定値は環境変数、または同名（小文字）の設定項目を参照する。
        """
        secret = self._read_secret(name)
        if secret:
            return secret

        value = os.getenv(name) or getattr(self, name.lower(), None)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def secret_source(self, name: str) -> str:
        """値の解決元を返す（値そのものは返さない）"""
        if self._read_secret(name):
            return "SECRET_OK"
        if self.get_secret_or_var(name):
            return "VAR_OK"
        return "NOT_FOUND"


settings = Settings()
