"""
FastAPIアプリケーションのメインエントリーポイント
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from .api import router as api_router
from .core.config import settings
from .core.errors import AppError, bad_request, internal_error
from .core.services.gemini import API_KEY_NAME
from .core.services.quota import QuotaStore
from .core.web.dependencies import get_quota_store, initialize_quota_store
from .models.schemas import DebugResponse, HealthResponse

# ロギング設定
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理
    起動時に日次カウンタストアを初期化する
    """

    logger.info("アプリケーションを起動中...")
    store = initialize_quota_store()
    logger.info(f"日次カウンタストアの初期化が完了しました backend={store.name}")
    if settings.secret_source(API_KEY_NAME) == "NOT_FOUND":
        logger.warning(f"{API_KEY_NAME} が未設定です。変換リクエストは失敗します")

    yield

    logger.info("アプリケーション終了中...")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """セキュリティヘッダーを追加するミドルウェア"""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # 基本的なセキュリティヘッダー
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # 本番環境のみの追加ヘッダー
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==========================================
# システムエンドポイント
# ==========================================

system_router = APIRouter(tags=["System"])


@system_router.get("/", response_model=HealthResponse)
async def root():
    """ルートエンドポイント（ヘルスチェック）"""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        timestamp=_now_iso(),
    )


@system_router.get("/health", response_model=HealthResponse)
async def health_check(store: QuotaStore = Depends(get_quota_store)):
    """詳細なヘルスチェック

    カウンタストアに到達できない場合も変換は継続できるため degraded とする
    """
    status = "healthy" if store.ping() else "degraded"
    if status != "healthy":
        logger.warning("日次カウンタストアに接続できません")
    return HealthResponse(
        status=status,
        version=settings.app_version,
        timestamp=_now_iso(),
    )


debug_router = APIRouter(tags=["Debug"])


@debug_router.get("/debug", response_model=DebugResponse)
async def debug_info(store: QuotaStore = Depends(get_quota_store)):
    """設定の解決状況（値そのものは返さない）"""
    return DebugResponse(
        api_key_status=settings.secret_source(API_KEY_NAME),
        model_version=settings.gemini_model,
        quota_backend=store.name,
    )


# ==========================================
# 例外ハンドラ
# ==========================================


async def app_error_handler(request: Request, exc: AppError):
    return exc.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    reason = errors[0].get("msg", "invalid request") if errors else "invalid request"
    return bad_request(f"Invalid request: {reason}").to_response()


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"想定外のエラーが発生しました path={request.url.path}")
    return internal_error(str(exc)).to_response()


def create_app() -> FastAPI:
    """FastAPIアプリケーションを作成
    Returns:
        設定済みのFastAPIアプリケーション
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="絵文字に合わせて写真の表情を変換するAPI",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS設定
    if settings.debug:
        # デバッグ時は全オリジンを許可
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=".*",
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        # 本番は許可リストのみ
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # セキュリティヘッダー（全環境で適用）
    app.add_middleware(SecurityHeadersMiddleware)

    # セキュリティ設定
    if not settings.debug:
        app.add_middleware(
            TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts_list
        )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(system_router)
    if settings.debug:
        app.include_router(debug_router)

    # /transform と /api/transform の両方で受け付ける
    app.include_router(api_router)
    app.include_router(api_router, prefix="/api", include_in_schema=False)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        reload=settings.debug,
    )
