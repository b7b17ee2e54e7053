from __future__ import annotations

from datetime import UTC, datetime
import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..domain.errors import ChatRelayError
from ..infrastructure.chat_store import get_turn_store
from ..observability.metrics import metrics_middleware_factory
from .routers.chat import router as chat_router

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, MONGO_URL, etc.)

app = FastAPI(title="Chat Relay API", version="0.1.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
# Same routes under /api, matching the paths the web client calls
app.include_router(chat_router, prefix="/api")

_cors_origins = os.getenv("CHATRELAY_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatRelayError)
async def chat_relay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Error in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": "Internal Server Error"})
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": f"{location}: {message}" if location else message},
    )


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": get_turn_store().kind,
        },
    }


@app.get("/")
def root():
    return {"name": "Chat Relay API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
