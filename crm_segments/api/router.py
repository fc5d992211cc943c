from fastapi import APIRouter

from crm_segments.api import segments

api_router = APIRouter()

api_router.include_router(segments.router, prefix="/segments", tags=["segments"])
