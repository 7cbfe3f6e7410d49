import asyncio
import json
import logging
import secrets

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from handler import adapter
from contextlib import asynccontextmanager
import uvicorn
from config import settings
from encoder import SSE_DONE, sse_event
from errors import AdapterError

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


class Unauthorized(Exception):
    pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    await adapter.start()
    yield
    await adapter.close()

app = FastAPI(title="Web Chat Completions Proxy", lifespan=lifespan)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized):
    return JSONResponse(
        status_code=401,
        content={"error": {"message": "Unauthorized", "type": "authentication_error", "code": None}},
    )


@app.exception_handler(AdapterError)
async def adapter_error_handler(request: Request, exc: AdapterError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal server error", "type": "internal_server_error", "code": None}},
    )


async def authenticate(request: Request):
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise Unauthorized()
    token = header[7:]
    if not any(secrets.compare_digest(token, t) for t in settings.auth_tokens):
        logger.debug("Rejected request with unknown token")
        raise Unauthorized()


async def sse_stream(chunks):
    async for chunk in chunks:
        yield sse_event(chunk)
        if settings.STREAM_CHUNK_DELAY:
            await asyncio.sleep(settings.STREAM_CHUNK_DELAY)
    yield SSE_DONE


@app.get("/v1/models", dependencies=[Depends(authenticate)])
async def models(refresh: bool = False):
    return await adapter.list_models(force_refresh=refresh)


@app.post("/v1/chat/completions", dependencies=[Depends(authenticate)])
@limiter.limit(f"{settings.MAX_REQUESTS_PER_MIN}/minute")
async def completions(request: Request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(
            status_code=400,
            content={"error": {"message": "Invalid JSON in request body", "type": "invalid_request_error", "code": None}},
        )

    response = await adapter.complete(body)
    if isinstance(response, dict):
        return response
    return StreamingResponse(
        sse_stream(response),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "browser": "ready" if adapter.pool.browser else "idle",
        "sessions": len(adapter.pool.sessions),
    }

if __name__ == "__main__":
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.log_level)
