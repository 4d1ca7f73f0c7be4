"""
APIスキーマ定義
FastAPIのリクエスト/レスポンスモデルの定義
"""

from pydantic import BaseModel, ConfigDict, Field


__all__ = [
    "TransformRequest",
    "TransformMetadata",
    "TransformResponse",
    "ErrorDetail",
    "ErrorResponse",
    "HealthResponse",
    "DebugResponse",
]


class TransformRequest(BaseModel):
    # 空文字チェックはエラー種別を揃えるためオーケストレータ側で行う
    image: str = Field("", description="画像データ（data:image/...;base64,...）")
    emoji: str = Field("", description="変換先の表情を表す絵文字")


class TransformMetadata(BaseModel):
    processing_time_ms: int = Field(..., ge=0, description="処理時間（ミリ秒）")
    model_version: str = Field(..., description="変換に用いたモデル")
    request_id: str = Field(..., description="リクエストID（UUID）")


class TransformResponse(BaseModel):
    transformed_image: str = Field(..., description="変換後の画像（base64）")
    metadata: TransformMetadata = Field(..., description="処理メタデータ")


class ErrorDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., description="エラーメッセージ")
    error_type: str = Field(..., alias="type", description="エラータイプ")
    param: str | None = Field(None, description="原因となったパラメータ")
    code: str | None = Field(None, description="エラーコード")
    suggestion: str | None = Field(None, description="利用者への対処案")


class ErrorResponse(BaseModel):
    error: ErrorDetail = Field(..., description="エラー詳細")


class HealthResponse(BaseModel):
    status: str = Field(..., description="サービスステータス")
    version: str = Field(..., description="アプリケーションバージョン")
    timestamp: str = Field(..., description="チェック時刻")


class DebugResponse(BaseModel):
    api_key_status: str = Field(..., description="APIキーの解決元")
    model_version: str = Field(..., description="利用モデル")
    quota_backend: str = Field(..., description="日次カウンタの保存先")
