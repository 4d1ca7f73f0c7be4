"""
エラー分類モジュール
内部で発生するすべての失敗を、クライアント向けの統一エラー形式
（status, type, code, message, suggestion）に変換する
"""

from dataclasses import dataclass
from enum import Enum

from fastapi.responses import JSONResponse

from ..models.schemas import ErrorDetail, ErrorResponse


INTERNAL_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    INTERNAL_ERROR = "internal_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    # 画像入力
    INVALID_IMAGE_FORMAT = "invalid_image_format"
    IMAGE_TOO_LARGE = "image_too_large"
    UNSUPPORTED_IMAGE_TYPE = "unsupported_image_type"
    # Gemini API
    GEMINI_API_ERROR = "gemini_api_error"
    GEMINI_QUOTA_EXCEEDED = "gemini_quota_exceeded"
    GEMINI_CONTENT_FILTERED = "gemini_content_filtered"
    GEMINI_INVALID_REQUEST = "gemini_invalid_request"
    GEMINI_TIMEOUT = "gemini_timeout"
    # 変換処理
    PROCESSING_FAILED = "processing_failed"
    NO_FACES_DETECTED = "no_faces_detected"
    TRANSFORMATION_FAILED = "transformation_failed"


@dataclass(frozen=True)
class ErrorSpec:
    status: int
    error_type: str
    suggestion: str
    # 設定されている場合はこちらをクライアントに返し、元のメッセージはログにのみ残す
    public_message: str | None = None


ERROR_SPECS: dict[ErrorKind, ErrorSpec] = {
    ErrorKind.BAD_REQUEST: ErrorSpec(
        400, "invalid_request_error", "Please check your input and try again."
    ),
    ErrorKind.INTERNAL_ERROR: ErrorSpec(
        500,
        "internal_error",
        "If the problem persists, please contact support.",
        INTERNAL_ERROR_MESSAGE,
    ),
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorSpec(
        429,
        "rate_limit_error",
        "Please wait until tomorrow to make more requests.",
    ),
    ErrorKind.INVALID_IMAGE_FORMAT: ErrorSpec(
        400,
        "invalid_image_format",
        "Please upload a valid image file (JPEG, PNG, or WebP).",
    ),
    ErrorKind.IMAGE_TOO_LARGE: ErrorSpec(
        413, "image_too_large", "Please upload a smaller image (max 10MB)."
    ),
    ErrorKind.UNSUPPORTED_IMAGE_TYPE: ErrorSpec(
        415, "unsupported_image_type", "Please upload a JPEG, PNG, or WebP image."
    ),
    ErrorKind.GEMINI_API_ERROR: ErrorSpec(
        502,
        "ai_service_error",
        "The AI service is experiencing issues. Please try again in a few minutes.",
        "AI service temporarily unavailable. Please try again.",
    ),
    ErrorKind.GEMINI_QUOTA_EXCEEDED: ErrorSpec(
        429,
        "ai_quota_exceeded",
        "The AI service is at capacity. Please try again in a few hours.",
        "AI service quota exceeded. Please try again later.",
    ),
    ErrorKind.GEMINI_CONTENT_FILTERED: ErrorSpec(
        451,
        "content_filtered",
        "Try using a different image or emoji that follows our content guidelines.",
        "The AI service flagged this content as inappropriate.",
    ),
    ErrorKind.GEMINI_INVALID_REQUEST: ErrorSpec(
        400,
        "ai_invalid_request",
        "Please check your image and emoji selection.",
        "Invalid request to AI service.",
    ),
    ErrorKind.GEMINI_TIMEOUT: ErrorSpec(
        504,
        "ai_timeout",
        "Please try again with a simpler image.",
        "AI service took too long to respond.",
    ),
    ErrorKind.PROCESSING_FAILED: ErrorSpec(
        422,
        "processing_failed",
        "Please try with a different image.",
        "Failed to process the image.",
    ),
    ErrorKind.NO_FACES_DETECTED: ErrorSpec(
        422,
        "no_faces_detected",
        "Please upload an image with a clear face.",
        "No faces detected in the image.",
    ),
    ErrorKind.TRANSFORMATION_FAILED: ErrorSpec(
        422,
        "transformation_failed",
        "Please try with a different emoji or image.",
        "Failed to transform the facial expression.",
    ),
}


class AppError(Exception):
    """アプリケーション共通の例外

    種別（ErrorKind）とメッセージを保持したまま呼び出し元へ伝播させ、
    例外ハンドラで統一エラー形式へ変換する。
    """

    def __init__(self, kind: ErrorKind, message: str, param: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.param = param

    @property
    def status_code(self) -> int:
        return ERROR_SPECS[self.kind].status

    def to_detail(self) -> ErrorDetail:
        spec = ERROR_SPECS[self.kind]
        # 内部エラーや上流のレスポンス本文はクライアントに返さない
        return ErrorDetail(
            message=spec.public_message or self.message,
            error_type=spec.error_type,
            param=self.param,
            code=self.kind.value,
            suggestion=spec.suggestion,
        )

    def to_response(self) -> JSONResponse:
        body = ErrorResponse(error=self.to_detail())
        return JSONResponse(
            status_code=self.status_code,
            content=body.model_dump(by_alias=True),
        )

    def __repr__(self) -> str:
        return f"AppError(kind={self.kind.name}, message={self.message!r})"


def bad_request(message: str, param: str | None = None) -> AppError:
    return AppError(ErrorKind.BAD_REQUEST, message, param)


def internal_error(message: str) -> AppError:
    return AppError(ErrorKind.INTERNAL_ERROR, message)
