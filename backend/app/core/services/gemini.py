"""
Gemini 画像編集プロバイダ
リクエスト組み立て、API呼び出し、レスポンス（candidates）の解釈、
コンテンツフィルタ時の再試行を担当する
"""

import logging
from typing import Annotated, Any, Union

import httpx
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_none,
    wait_random,
)

from ..config import settings
from ..errors import AppError, ErrorKind, internal_error


logger = logging.getLogger(__name__)

API_KEY_NAME = "GEMINI_API_KEY"
DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"
# エラーメッセージに含める上流レスポンス本文の最大長
MAX_ERROR_BODY_CHARS = 500

PROMPT_TEMPLATE = (
    "Please edit this photo by changing the facial expression of the subject "
    "to look like this emoji: {emoji}. Make the expression match the mood of the "
    "emoji while keeping everything else in the image exactly the same."
)

CONTENT_FILTER_MARKERS = ("PROHIBITED_CONTENT", "flagged as inappropriate")


# ==========================================
# リクエスト/レスポンスの型
# ==========================================


class _GeminiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TextPart(_GeminiModel):
    text: str = ""


class InlineData(_GeminiModel):
    mime_type: str = Field("image/png", alias="mimeType")
    data: str = ""


class InlineDataPart(_GeminiModel):
    inline_data: InlineData = Field(..., alias="inlineData")


def _part_kind(value: Any) -> str:
    """パートの種別を内容（キーの有無）で判定する"""
    if isinstance(value, dict):
        has_image = "inlineData" in value or "inline_data" in value
        return "inline_data" if has_image else "text"
    return "inline_data" if isinstance(value, InlineDataPart) else "text"


GeminiPart = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[InlineDataPart, Tag("inline_data")],
    ],
    Discriminator(_part_kind),
]


class GeminiContent(_GeminiModel):
    role: str | None = None
    parts: list[GeminiPart] = Field(default_factory=list)


class GeminiRequest(_GeminiModel):
    contents: list[GeminiContent]


class GeminiCandidate(_GeminiModel):
    content: GeminiContent | None = None
    finish_reason: str | None = Field(None, alias="finishReason")


class PromptFeedback(_GeminiModel):
    block_reason: str | None = Field(None, alias="blockReason")


class GeminiResponse(_GeminiModel):
    candidates: list[GeminiCandidate] = Field(default_factory=list)
    prompt_feedback: PromptFeedback | None = Field(None, alias="promptFeedback")


# finishReason ごとのエラー（該当しないものは正常終了として扱う）
FINISH_REASON_ERRORS: dict[str, tuple[ErrorKind, str]] = {
    "PROHIBITED_CONTENT": (
        ErrorKind.GEMINI_CONTENT_FILTERED,
        "Content was flagged as inappropriate by Gemini (PROHIBITED_CONTENT)",
    ),
    "SAFETY": (
        ErrorKind.GEMINI_CONTENT_FILTERED,
        "Content violated safety guidelines",
    ),
    "RECITATION": (
        ErrorKind.TRANSFORMATION_FAILED,
        "Gemini could not process this type of content",
    ),
    "OTHER": (
        ErrorKind.TRANSFORMATION_FAILED,
        "Gemini encountered an unknown error",
    ),
}


def is_content_filter_signal(exc: BaseException) -> bool:
    """再送で結果が変わりうるコンテンツフィルタ由来のエラーかどうか"""
    if not isinstance(exc, AppError):
        return False
    message = exc.message.lower()
    return any(marker.lower() in message for marker in CONTENT_FILTER_MARKERS)


def _http_error(status_code: int, body: str) -> AppError:
    body = body[:MAX_ERROR_BODY_CHARS]
    if status_code == 400:
        return AppError(
            ErrorKind.GEMINI_INVALID_REQUEST, f"Invalid request to Gemini API: {body}"
        )
    if status_code in (401, 403):
        return AppError(
            ErrorKind.GEMINI_API_ERROR, "Authentication failed with Gemini API"
        )
    if status_code == 429:
        return AppError(ErrorKind.GEMINI_QUOTA_EXCEEDED, "Gemini API quota exceeded")
    if 500 <= status_code <= 599:
        return AppError(ErrorKind.GEMINI_API_ERROR, f"Gemini API server error: {body}")
    return AppError(ErrorKind.GEMINI_API_ERROR, f"Gemini API error: {body}")


class GeminiProvider:
    """Gemini の generateContent API を使った表情変換

    APIキーはシークレット → 環境変数の順で解決し、どちらも無い場合は
    リクエストを送る前に InternalError を送出する。
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_jitter: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        api_key = api_key or settings.get_secret_or_var(API_KEY_NAME)
        if not api_key:
            raise internal_error(
                f"{API_KEY_NAME} not configured as secret or environment variable"
            )
        self.api_key = api_key
        self.model = model or settings.gemini_model
        self.api_base = (api_base or settings.gemini_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.gemini_timeout_seconds
        self.max_attempts = max(
            1, max_attempts if max_attempts is not None else settings.gemini_max_attempts
        )
        self.retry_jitter = (
            retry_jitter
            if retry_jitter is not None
            else settings.gemini_retry_jitter_seconds
        )
        self._transport = transport
        self.attempts = 0

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    @staticmethod
    def build_prompt(emoji: str) -> str:
        return PROMPT_TEMPLATE.format(emoji=emoji)

    def build_request(self, image_data: str, emoji: str, mime_type: str) -> GeminiRequest:
        return GeminiRequest(
            contents=[
                GeminiContent(
                    parts=[
                        TextPart(text=self.build_prompt(emoji)),
                        InlineDataPart(
                            inline_data=InlineData(mime_type=mime_type, data=image_data)
                        ),
                    ]
                )
            ]
        )

    async def _call_gemini_api(self, request_body: GeminiRequest) -> GeminiResponse:
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = request_body.model_dump(by_alias=True, exclude_none=True)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.endpoint, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise AppError(
                ErrorKind.GEMINI_TIMEOUT,
                f"Gemini API did not respond within {self.timeout:g} seconds",
            ) from e
        except httpx.HTTPError as e:
            raise AppError(
                ErrorKind.GEMINI_API_ERROR, f"Failed to reach Gemini API: {e}"
            ) from e

        if not 200 <= response.status_code < 300:
            logger.warning(f"Gemini API がエラーを返しました status={response.status_code}")
            raise _http_error(response.status_code, response.text or "Unknown error")

        try:
            return GeminiResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise internal_error(
                f"Failed to parse Gemini response: {e}. "
                f"Response: {response.text[:MAX_ERROR_BODY_CHARS]}"
            ) from e

    @staticmethod
    def extract_image(response: GeminiResponse) -> str:
        """candidates から最初の画像データ（base64）を取り出す"""
        if not response.candidates:
            message = "No response from Gemini"
            block_reason = (
                response.prompt_feedback.block_reason
                if response.prompt_feedback
                else None
            )
            if block_reason:
                message += f" (blockReason: {block_reason})"
            raise internal_error(message)

        for candidate in response.candidates:
            # 終了理由は内容より先に確認する
            if candidate.finish_reason in FINISH_REASON_ERRORS:
                kind, message = FINISH_REASON_ERRORS[candidate.finish_reason]
                raise AppError(kind, message)

            if candidate.content is None:
                continue
            for part in candidate.content.parts:
                if isinstance(part, InlineDataPart):
                    return part.inline_data.data

        raise AppError(
            ErrorKind.TRANSFORMATION_FAILED,
            "Gemini did not return an image. Try a different photo or emoji.",
        )

    async def try_transform_once(
        self, image_data: str, emoji: str, mime_type: str = DEFAULT_IMAGE_MIME_TYPE
    ) -> str:
        request_body = self.build_request(image_data, emoji, mime_type)
        response = await self._call_gemini_api(request_body)
        return self.extract_image(response)

    def _wait_strategy(self):
        if self.retry_jitter > 0:
            return wait_random(0, self.retry_jitter)
        return wait_none()

    async def transform_image(
        self, image_data: str, emoji: str, mime_type: str = DEFAULT_IMAGE_MIME_TYPE
    ) -> str:
        """表情を変換した画像（base64）を返す

        コンテンツフィルタに該当した場合のみ、最大 max_attempts 回まで再送する。
        それ以外のエラーは即座に送出する。再試行を使い切った場合は最後のエラーを送出する。
        """
        self.attempts = 0
        result = ""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception(is_content_filter_signal),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self.attempts = attempt.retry_state.attempt_number
                result = await self.try_transform_once(image_data, emoji, mime_type)
        return result
