"""
画像入力バリデーション
data URL 形式・MIMEタイプ・サイズ・base64文字種を検査する
"""

import re
from dataclasses import dataclass

from .config import settings
from .errors import AppError, ErrorKind


DEFAULT_MIME_TYPE = "image/jpeg"

_BASE64_CHARS = re.compile(r"[A-Za-z0-9+/=]*")


@dataclass(frozen=True)
class ValidatedImage:
    mime_type: str
    payload: str
    approximate_size: int


def approximate_decoded_size(payload: str) -> int:
    """base64 文字列から復号後のおおよそのバイト数を求める"""
    return (len(payload) * 3) // 4


def is_valid_base64(payload: str) -> bool:
    """base64 の文字種のみで構成されているかを確認する

    末尾のパディングを除いた上で文字種だけを見る簡易チェック。
    途中の "=" も文字種として許容する。
    実際に復号できるかどうかは検証しない。
    """
    return _BASE64_CHARS.fullmatch(payload.rstrip("=")) is not None


def _parse_mime_type(header: str) -> str:
    # "data:image/png;base64" -> "image/png"
    return header[len("data:") :].split(";", 1)[0].strip().lower()


def validate_image_data(
    image_data: str,
    max_size: int | None = None,
    allowed_types: list[str] | None = None,
    allow_bare_base64: bool | None = None,
) -> ValidatedImage:
    """画像データを検証し、MIMEタイプとペイロードを返す

    Args:
        image_data: `data:<mime>;base64,<payload>` 形式の文字列
        max_size: 復号後サイズの上限（バイト）
        allowed_types: 許可するMIMEタイプ
        allow_bare_base64: data URL でない素の base64 を許可するか

    Returns:
        検証済みの画像情報

    Raises:
        AppError: 形式・種類・サイズのいずれかが不正な場合
    """
    if max_size is None:
        max_size = settings.max_image_size
    if allowed_types is None:
        allowed_types = settings.allowed_image_types_list
    if allow_bare_base64 is None:
        allow_bare_base64 = settings.allow_bare_base64

    if not image_data.startswith("data:"):
        if not allow_bare_base64:
            raise AppError(
                ErrorKind.INVALID_IMAGE_FORMAT,
                "Image must be provided as a data URL (data:image/...)",
                param="image",
            )
        mime_type = DEFAULT_MIME_TYPE
        payload = image_data
    else:
        parts = image_data.split(",")
        if len(parts) != 2:
            raise AppError(
                ErrorKind.INVALID_IMAGE_FORMAT,
                "Invalid image data URL format",
                param="image",
            )
        header, payload = parts

        if "image/" not in header:
            raise AppError(
                ErrorKind.UNSUPPORTED_IMAGE_TYPE,
                "Only image files are supported",
                param="image",
            )

        mime_type = _parse_mime_type(header)
        if mime_type not in allowed_types:
            raise AppError(
                ErrorKind.UNSUPPORTED_IMAGE_TYPE,
                "Unsupported image format. Please use JPEG, PNG, or WebP",
                param="image",
            )

    size = approximate_decoded_size(payload)
    if size > max_size:
        raise AppError(
            ErrorKind.IMAGE_TOO_LARGE,
            f"Image is too large (max {max_size // (1024 * 1024)}MB)",
            param="image",
        )

    if not is_valid_base64(payload):
        raise AppError(
            ErrorKind.INVALID_IMAGE_FORMAT,
            "Invalid base64 image data",
            param="image",
        )

    return ValidatedImage(mime_type=mime_type, payload=payload, approximate_size=size)
