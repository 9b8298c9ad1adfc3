import os
import sys
import asyncio
import logging

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from ragchat.config import settings
from ragchat.core.exceptions import BaseError
from ragchat.core.logging_config import setup_logging
from ragchat.api import router, get_chat_service

setup_logging(level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)

logger = logging.getLogger(__name__)


def setup_langsmith():
    if settings.LANGSMITH_API_KEY:
        os.environ["LANGSMITH_API_KEY"] = settings.LANGSMITH_API_KEY
        os.environ["LANGSMITH_PROJECT"] = settings.LANGSMITH_PROJECT or "ragchat"
        os.environ["LANGSMITH_TRACING"] = str(settings.LANGSMITH_TRACING).lower()
        logger.info(f"LangSmith enabled: project={settings.LANGSMITH_PROJECT}")
    else:
        logger.info("LangSmith not configured (LANGSMITH_API_KEY not set)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"chat engine: {settings.CHAT_ENGINE}, default provider: {settings.DEFAULT_LLM_PROVIDER}")
    yield
    if get_chat_service.cache_info().currsize:
        await get_chat_service().aclose()


app = FastAPI(
    title="RAG Chat API",
    description="Retrieval-augmented chat with guardrails, citations and provider fallback",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Guardrail-Meta", "X-Chat-Session", "X-Model-Candidate"],
)


@app.exception_handler(BaseError)
async def base_error_handler(request: Request, exc: BaseError):
    if exc.http_status >= 500:
        logger.error(f"{request.url.path} failed: {exc.to_dict()}")
    else:
        logger.info(f"{request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


app.include_router(router, prefix="/api")

setup_langsmith()


@app.get("/")
async def root():
    return {
        "name": "RAG Chat API",
        "version": "1.0.0",
        "docs": "/docs",
    }
