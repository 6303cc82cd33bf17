"""
Application entrypoint.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from loguru import logger
import authbridge.database.orms  # noqa: F401
from authbridge.auth.router import router as oauth_router
from authbridge.auth.service import get_auth_service
from authbridge.config import settings
from authbridge.database import Base, engine


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.debug:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created database tables (debug mode)")
    yield
    audit = get_auth_service().audit
    if hasattr(audit, "drain"):
        await audit.drain()
    await settings.redis_client.close()
    await engine.dispose()


app = FastAPI(title="authbridge", lifespan=lifespan)
app.include_router(oauth_router, prefix="/oauth", tags=["OAuth"])


@app.get("/ping")
async def ping():
    return {"message": "pong"}
