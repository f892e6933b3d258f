import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from pydantic import BaseModel, ValidationError

from config import Settings, settings
from decision import AdmissionGate, rejection_for
from errors import AdmissionRejection, ClientInputError, GatewayError
from providers import ProviderDispatcher
from rate_limit import SlidingWindowRateLimiter
from redis_client import create_redis_client
from schemas import HealthResponse, ProviderId, TranslationRequest
from security import HumanityVerifier, extract_client_key, extract_humanity_token, extract_origin
from traffic_logger import emit_traffic_event, shutdown_traffic_logger, start_traffic_logger


# ======================================================
# Logging
# ======================================================

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("translator.gateway")


# ======================================================
# Routes
# ======================================================

TRANSLATION_ROUTES = {
    "/api/translate": ProviderId.LOCAL,
    "/api/translate-gpt": ProviderId.OPENAI,
    "/api/translate-deepseek": ProviderId.DEEPSEEK,
    "/api/translate-deepsick": ProviderId.DEEPSEEK,  # path the existing frontend posts to
    "/api/translate-gemini": ProviderId.GEMINI,
}

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


# ======================================================
# Request Context (Facts Only)
# ======================================================

class RequestContext(BaseModel):
    timestamp: str
    provider: str
    path: str

    ip: str
    origin: Optional[str]
    user_agent: Optional[str]

    decision: str
    reason: Optional[str]

    status_code: int
    latency_ms: int


# ======================================================
# Body parsing
# ======================================================

def parse_json_body(body: bytes) -> Optional[dict]:
    """
    Lenient parse used before admission (the humanity token lives in
    the body). Invalid JSON is reported later, after admission.
    """
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def parse_translation_request(payload: Optional[dict], provider_id: ProviderId) -> TranslationRequest:
    if payload is None:
        raise ClientInputError("Request body must be a JSON object.")

    try:
        return TranslationRequest.model_validate({**payload, "provider": provider_id})
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        if first["type"] == "missing":
            message = f"Missing {field} in request body."
        else:
            message = f"Invalid {field}: {first['msg']}"
        raise ClientInputError(message) from e


# ======================================================
# App Factory
# ======================================================

def create_app(
    app_settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    rate_limit_store: Optional[redis.Redis] = None,
    verifier_client: Optional[httpx.AsyncClient] = None,
    completion: Optional[Callable[..., Awaitable[Any]]] = None,
) -> FastAPI:
    app_settings = app_settings or settings

    if rate_limit_store is None:
        rate_limit_store = create_redis_client(app_settings)
    rate_limiter = (
        SlidingWindowRateLimiter(
            rate_limit_store,
            limit=app_settings.RATE_LIMIT_REQUESTS,
            window_seconds=app_settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        if rate_limit_store is not None
        else None
    )

    gate = AdmissionGate(
        app_settings,
        rate_limiter=rate_limiter,
        verifier=HumanityVerifier(
            app_settings.RECAPTCHA_SECRET_KEY,
            verify_url=app_settings.RECAPTCHA_VERIFY_URL,
            timeout=app_settings.RECAPTCHA_TIMEOUT_SECONDS,
            client=verifier_client,
        ),
    )
    dispatcher = ProviderDispatcher(app_settings, client=http_client, completion=completion)

    app = FastAPI(title="Greek Translate Gateway")
    app.state.settings = app_settings
    app.state.gate = gate
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    @app.on_event("startup")
    async def startup():
        start_traffic_logger(app_settings.EVENT_SINK_URL, app_settings.EVENT_SINK_SECRET)
        logger.info(
            f"Gateway ready (env={app_settings.ENV}, "
            f"rate limiting={'on' if rate_limiter else 'off'}, "
            f"providers={dispatcher.configured()})"
        )

    @app.on_event("shutdown")
    async def shutdown():
        await dispatcher.close()
        await shutdown_traffic_logger()

    # --------------------------------------------------
    # Errors
    # --------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message},
            headers=exc.headers,
        )

    # --------------------------------------------------
    # Health
    # --------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        return HealthResponse(
            status="ok",
            environment=app_settings.ENV,
            providers=dispatcher.configured(),
        )

    # --------------------------------------------------
    # Translation (ALL REAL TRAFFIC)
    # --------------------------------------------------

    async def handle_translation(provider_id: ProviderId, request: Request):
        start_time = time.monotonic()

        def record(decision: str, reason: Optional[str], status_code: int) -> None:
            ctx = RequestContext(
                timestamp=datetime.now(timezone.utc).isoformat(),
                provider=provider_id.value,
                path=request.url.path,
                ip=extract_client_key(request),
                origin=extract_origin(request),
                user_agent=request.headers.get("user-agent"),
                decision=decision,
                reason=reason,
                status_code=status_code,
                latency_ms=int((time.monotonic() - start_time) * 1000),
            )
            logger.info(ctx.model_dump_json())
            emit_traffic_event(ctx.model_dump())

        try:
            payload = parse_json_body(await request.body())

            admission = await gate.evaluate(request, extract_humanity_token(request, payload))
            if not admission.allowed:
                raise rejection_for(admission)

            translation = parse_translation_request(payload, provider_id)
            normalizer = await dispatcher.open_stream(translation)
        except GatewayError as e:
            record("BLOCK" if isinstance(e, AdmissionRejection) else "ERROR", e.message, e.status_code)
            raise

        record("ALLOW", None, 200)

        return StreamingResponse(
            normalizer.ndjson(),
            media_type=STREAM_MEDIA_TYPE,
            headers=STREAM_HEADERS,
            # body iteration may never start if the client leaves first
            background=BackgroundTask(normalizer.aclose),
        )

    def translation_endpoint(provider_id: ProviderId):
        async def translate(request: Request):
            return await handle_translation(provider_id, request)

        translate.__name__ = f"translate_{provider_id.value}"
        return translate

    for path, provider_id in TRANSLATION_ROUTES.items():
        app.add_api_route(path, translation_endpoint(provider_id), methods=["POST"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
