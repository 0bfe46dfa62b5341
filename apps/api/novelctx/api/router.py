from fastapi import APIRouter

from novelctx.api.endpoints.context import router as context_router

api_router = APIRouter()
api_router.include_router(context_router)
