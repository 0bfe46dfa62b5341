from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from novelctx.api.router import api_router
from novelctx.core.config import settings
from novelctx.core.database import init_db

logger = logging.getLogger("novelctx.startup")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    logger.info("novelctx_started profile=%s database=%s", settings.config_profile, settings.database_url.split(":", 1)[0])
    yield


app = FastAPI(title="novelctx-api", lifespan=lifespan)
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
def health():
    return {"ok": True}
