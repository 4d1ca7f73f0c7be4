from fastapi import APIRouter, Depends, Request

from ..core.services.transformer import TransformOrchestrator
from ..core.web.dependencies import get_orchestrator
from ..models.schemas import ErrorResponse, TransformRequest, TransformResponse


router = APIRouter(tags=["Transform"])

_ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 413, 415, 422, 429, 451, 500, 502, 504)
}


@router.post(
    "/transform",
    response_model=TransformResponse,
    responses=_ERROR_RESPONSES,
    summary="絵文字に合わせて表情を変換",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "application/json": {"schema": TransformRequest.model_json_schema()}
            },
        }
    },
)
async def transform(
    request: Request,
    orchestrator: TransformOrchestrator = Depends(get_orchestrator),
) -> TransformResponse:
    """画像と絵文字を受け取り、表情を変換した画像を返す

    本文のJSON解析もエラー形式を揃えるためオーケストレータ側で行う。
    """
    body = await request.body()
    return await orchestrator.handle(body, request.headers)
