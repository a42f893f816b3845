import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.security import APIKeyHeader, APIKeyQuery
from starlette.middleware.cors import CORSMiddleware

from ifilm_proxy.configs import settings
from ifilm_proxy.handlers import build_stream_proxy
from ifilm_proxy.routes import media_router, stream_router
from ifilm_proxy.upstream.config_provider import SettingsConfigProvider
from ifilm_proxy.upstream.jellyfin import JellyfinClient

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

jellyfin_client = JellyfinClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await jellyfin_client.close()


app = FastAPI(
    title="iFilm stream proxy",
    lifespan=lifespan,
    docs_url=None if settings.disable_docs else "/docs",
    redoc_url=None if settings.disable_docs else "/redoc",
)
app.state.stream_proxy = build_stream_proxy(SettingsConfigProvider(), jellyfin_client)
api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["Content-Type", "Range"],
)


async def verify_api_key(api_key: str = Security(api_password_query), api_key_alt: str = Security(api_password_header)):
    """
    Verifies the API key for the request.

    Args:
        api_key (str): The API key to validate.
        api_key_alt (str): The alternative API key to validate.

    Raises:
        HTTPException: If the API key is invalid.
    """
    if not settings.api_password:
        return

    if api_key == settings.api_password or api_key_alt == settings.api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Segment and playlist fetches come straight from the player and carry no credentials.
app.include_router(stream_router, prefix=settings.api_prefix, tags=["stream"])
app.include_router(media_router, prefix=settings.api_prefix, tags=["media"], dependencies=[Depends(verify_api_key)])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
