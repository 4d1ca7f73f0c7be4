"""
表情変換オーケストレータ
リクエストの受付から応答生成までを一定の順序で実行する

    受付 → 入力検証 → 日次上限の確認 → Gemini で変換 → 使用回数の記録 → 応答

いずれかの段階で失敗した場合はその時点で打ち切り、AppError として送出する。
"""

import datetime as dt
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from pydantic import ValidationError

from ...common.utils.ids import generate_request_id, hash_identifier
from ...models.schemas import TransformMetadata, TransformRequest, TransformResponse
from ..config import settings
from ..errors import ERROR_SPECS, AppError, ErrorKind, bad_request, internal_error
from ..validation import ValidatedImage, validate_image_data
from .gemini import is_content_filter_signal
from .quota import QuotaTracker, resolve_identity


logger = logging.getLogger(__name__)


class TransformState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    QUOTA_CHECKED = "quota_checked"
    TRANSFORMED = "transformed"
    QUOTA_COMMITTED = "quota_committed"
    RESPONDED = "responded"
    ERRORED = "errored"


class TransformProvider(Protocol):
    attempts: int

    async def transform_image(
        self, image_data: str, emoji: str, mime_type: str = ...
    ) -> str: ...


ProviderFactory = Callable[[], TransformProvider]


@dataclass
class TransformContext:
    request_id: str
    identity: str
    started_at: float = field(default_factory=time.perf_counter)
    state: TransformState = TransformState.RECEIVED
    attempts: int = 0

    def advance(self, state: TransformState) -> None:
        logger.debug(f"request_id={self.request_id} {self.state.value} -> {state.value}")
        self.state = state

    @property
    def elapsed_ms(self) -> int:
        return max(0, int((time.perf_counter() - self.started_at) * 1000))


def normalize_error(exc: Exception) -> AppError:
    """パイプライン内の例外を AppError に揃える

    コンテンツフィルタ由来のエラーは種別に関わらず GeminiContentFiltered とし、
    想定外の例外は InternalError とする。
    """
    if isinstance(exc, AppError):
        if (
            exc.kind is not ErrorKind.GEMINI_CONTENT_FILTERED
            and is_content_filter_signal(exc)
        ):
            return AppError(ErrorKind.GEMINI_CONTENT_FILTERED, exc.message, exc.param)
        return exc
    logger.exception("表情変換中に想定外のエラーが発生しました")
    return internal_error(f"Image transformation failed: {exc}")


class TransformOrchestrator:
    def __init__(
        self,
        quota: QuotaTracker,
        provider_factory: ProviderFactory,
        model_version: str | None = None,
        validator: Callable[[str], ValidatedImage] = validate_image_data,
    ):
        self.quota = quota
        self.provider_factory = provider_factory
        self.model_version = model_version or settings.gemini_model
        self.validator = validator

    async def handle(self, body: bytes, headers: Mapping[str, str]) -> TransformResponse:
        """リクエスト本文とヘッダーから変換結果を生成する

        Raises:
            AppError: いずれかの段階で失敗した場合
        """
        ctx = TransformContext(
            request_id=generate_request_id(), identity=resolve_identity(headers)
        )
        try:
            response = await self._run(ctx, body)
        except Exception as e:
            error = normalize_error(e)
            failed_at = ctx.state
            ctx.advance(TransformState.ERRORED)
            self._log_summary(ctx, error, failed_at)
            if error is e:
                raise
            raise error from e

        self._log_summary(ctx, None)
        return response

    async def _run(self, ctx: TransformContext, body: bytes) -> TransformResponse:
        try:
            request = TransformRequest.model_validate_json(body)
        except ValidationError as e:
            reason = e.errors()[0].get("msg", "invalid body") if e.errors() else ""
            raise bad_request(f"Invalid JSON in request body: {reason}") from e

        if not request.image:
            raise bad_request("Please upload an image to transform", param="image")
        emoji = request.emoji.strip()
        if not emoji:
            raise bad_request(
                "Please select an emoji for the transformation", param="emoji"
            )

        image = self.validator(request.image)
        ctx.advance(TransformState.VALIDATED)

        # 上流を呼ぶ前に判定し、無駄な外部コストを発生させない
        self.quota.check_and_reserve(ctx.identity)
        ctx.advance(TransformState.QUOTA_CHECKED)

        provider = self.provider_factory()
        try:
            transformed_image = await provider.transform_image(
                image.payload, emoji, image.mime_type
            )
        finally:
            ctx.attempts = getattr(provider, "attempts", 0)
        ctx.advance(TransformState.TRANSFORMED)

        # 成功した変換のみ計上する（記録の失敗は無視される）
        self.quota.commit(ctx.identity)
        ctx.advance(TransformState.QUOTA_COMMITTED)

        response = TransformResponse(
            transformed_image=transformed_image,
            metadata=TransformMetadata(
                processing_time_ms=ctx.elapsed_ms,
                model_version=self.model_version,
                request_id=ctx.request_id,
            ),
        )
        ctx.advance(TransformState.RESPONDED)
        return response

    def _log_summary(
        self,
        ctx: TransformContext,
        error: AppError | None,
        failed_at: TransformState | None = None,
    ) -> None:
        # 画像・絵文字・生のIPは記録しない
        log = {
            "request_id": ctx.request_id,
            "ip_hash": hash_identifier(ctx.identity),
            "state": ctx.state.value,
            "failed_at": failed_at.value if failed_at else None,
            "status": error.status_code if error else 200,
            "code": error.kind.value if error else None,
            "attempts": ctx.attempts,
            "processing_time_ms": ctx.elapsed_ms,
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
        }
        line = json.dumps(log, ensure_ascii=False)
        if error is None:
            logger.info(line)
            return
        # クライアントに返さない詳細（上流の本文など）はここにだけ残す
        detail = error.message if ERROR_SPECS[error.kind].public_message else None
        if error.kind is ErrorKind.INTERNAL_ERROR:
            logger.error(f"{line} detail={detail}")
        elif detail:
            logger.warning(f"{line} detail={detail}")
        else:
            logger.info(line)
