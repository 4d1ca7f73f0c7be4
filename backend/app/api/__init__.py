from fastapi import APIRouter

from .transform import router as transform_router


router = APIRouter()

router.include_router(transform_router)
