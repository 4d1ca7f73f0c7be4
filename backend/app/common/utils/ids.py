import hashlib
import uuid


def generate_request_id() -> str:
    return str(uuid.uuid4())


def hash_identifier(value: str, length: int = 16) -> str:
    """ログ出力用に識別子（IPなど）をハッシュ化する"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]
