"""FastAPI application entrypoint for edu-agent."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from edu_agent.__version__ import __version__
from edu_agent.auth import require_api_key
from edu_agent.config import settings
from edu_agent.db import PersistenceFailure
from edu_agent.dependencies import Services, get_services
from edu_agent.routers import chat as chat_router
from edu_agent.routers import sessions as sessions_router

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动时初始化 DB、加载内容块、创建报告目录。"""
    services = get_services()
    services.db.init_schema()
    if settings.chunks_file is not None:
        count = services.catalog.load_file(settings.chunks_file)
        logger.info("Loaded %d chunk(s) from %s", count, settings.chunks_file)
    else:
        logger.info("EDU_AGENT_CHUNKS_FILE not set; using %d chunk(s) already in the database", services.catalog.count_active())
    settings.reports_dir.mkdir(parents=True, exist_ok=True)
    yield


app = FastAPI(title="edu-agent", version=__version__, lifespan=lifespan)


# 统一错误响应：不暴露堆栈、路径、配置或密钥
def _safe_detail(exc: Exception) -> str:
    if hasattr(exc, "detail"):
        d = getattr(exc, "detail")
        if isinstance(d, str):
            return d
        if isinstance(d, list):
            return "Validation error"
    return "Internal server error"


@app.exception_handler(HTTPException)
async def http_exception_handler(_r: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": _safe_detail(exc)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_r: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": "Validation error", "errors": exc.errors()},
    )


@app.exception_handler(PersistenceFailure)
async def persistence_exception_handler(_r: Request, exc: PersistenceFailure) -> JSONResponse:
    logger.error("Storage failure: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})


@app.exception_handler(Exception)
async def generic_exception_handler(_r: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=500,
        content={"detail": _safe_detail(exc)},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Idempotency-Key", "X-Turn-Id"],
)


@app.get("/health")
async def health(services: Services = Depends(get_services)) -> dict:
    """健康检查：LLM 是否配置、当前内容块数量。不返回密钥，无需认证。"""
    try:
        chunks = await asyncio.to_thread(services.catalog.count_active)
    except PersistenceFailure:
        logger.warning("Health check could not read the chunk catalog")
        chunks = None
    base_url = settings.llm_base_url or ""
    return {
        "status": "ok" if chunks is not None else "degraded",
        "version": __version__,
        "llm_configured": services.llm.configured,
        "llm_model": settings.llm_model,
        "llm_base_url": base_url if len(base_url) <= 50 else base_url[:50] + "...",
        "active_chunks": chunks,
    }


_auth = [Depends(require_api_key)]
app.include_router(chat_router.router, prefix="/api", dependencies=_auth)
# 兼容直接把 base URL 配成服务根地址的平台
app.include_router(chat_router.router, prefix="/v1", dependencies=_auth)
app.include_router(sessions_router.router, prefix="/api", dependencies=_auth)
