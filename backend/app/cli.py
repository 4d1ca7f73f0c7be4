"""
コマンドラインクライアント
画像ファイルと絵文字を変換APIへ送り、結果を画像ファイルとして保存する

    emobanana -i cat.jpg -e 😊
    emobanana --image dog.png --emoji 😢 --output sad_dog.png
    emobanana -i bird.jpg -e 😠 -u http://localhost:8000
"""

import argparse
import base64
import binascii
import logging
import mimetypes
import os
import sys
from pathlib import Path

import httpx


logger = logging.getLogger(__name__)

DEFAULT_URL = "https://emobanana.guitaripod.workers.dev"
DEFAULT_OUTPUT = "transformed.png"
DEFAULT_MIME_TYPE = "image/png"
REQUEST_TIMEOUT_SECONDS = 120.0


class CliError(Exception):
    """利用者に表示して終了コード1で終えるエラー"""


def default_url() -> str:
    return os.getenv("EMOBANANA_DEFAULT_URL") or DEFAULT_URL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emobanana",
        description="Transform facial expressions in a photo using an emoji prompt",
    )
    parser.add_argument(
        "-i", "--image", required=True, help="Path to the image file to transform"
    )
    parser.add_argument(
        "-e",
        "--emoji",
        required=True,
        help="Emoji representing the desired facial expression (e.g. 😊)",
    )
    parser.add_argument(
        "-u", "--url", default=default_url(), help="URL of the emobanana API"
    )
    parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_OUTPUT,
        help="Path where the transformed image will be saved",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return parser


def load_image_as_data_url(path: str | Path) -> str:
    path = Path(path)
    if not path.is_file():
        raise CliError(f"File not found: {path}")
    mime_type, _ = mimetypes.guess_type(path.name)
    if not mime_type or not mime_type.startswith("image/"):
        mime_type = DEFAULT_MIME_TYPE
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def decode_image(data: str) -> bytes:
    """生の base64 または data URL を復号する"""
    if data.startswith("data:"):
        parts = data.split(",")
        if len(parts) == 2:
            data = parts[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CliError(f"Base64 decode error: {e}") from e


def request_transform(
    url: str, image: str, emoji: str, client: httpx.Client | None = None
) -> dict:
    endpoint = f"{url.rstrip('/')}/transform"
    logger.info(f"変換リクエストを送信します: {endpoint}")
    owns_client = client is None
    client = client or httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)
    try:
        response = client.post(endpoint, json={"image": image, "emoji": emoji})
    except httpx.HTTPError as e:
        raise CliError(f"HTTP request error: {e}") from e
    finally:
        if owns_client:
            client.close()

    try:
        data = response.json()
    except ValueError as e:
        raise CliError(
            f"Unexpected response from API (status {response.status_code})"
        ) from e

    if response.is_success:
        return data
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
    else:
        message = error if isinstance(error, str) else None
    raise CliError(f"API error: {message or response.status_code}")


def run(args: argparse.Namespace, client: httpx.Client | None = None) -> None:
    image = load_image_as_data_url(args.image)
    result = request_transform(args.url, image, args.emoji, client=client)

    transformed = result.get("transformed_image")
    if not transformed:
        raise CliError("API response did not include an image")
    Path(args.output).write_bytes(decode_image(transformed))

    metadata = result.get("metadata") or {}
    logger.info(f"Request ID: {metadata.get('request_id')}")
    logger.info(f"Processing time: {metadata.get('processing_time_ms')}ms")
    logger.info(f"Model version: {metadata.get('model_version')}")
    print(f"Transformed image saved to: {args.output}")


def main(argv: list[str] | None = None, client: httpx.Client | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        run(args, client=client)
    except (CliError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
