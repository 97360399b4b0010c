from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from ai_key_proxy.errors import ProxyError
from ai_key_proxy.gateway.audit import JsonlAuditLogger
from ai_key_proxy.relay import relay_error
from ai_key_proxy.service import PROVIDERS, ProxyService
from ai_key_proxy.settings import Settings, get_settings

app = FastAPI(
    title="AI Key Proxy",
    description="HuggingFace and Gemini proxy with API key rotation and retry.",
    version="0.1.0",
)

CORS_ALLOW_METHODS = ["GET", "POST", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Content-Type"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

logger = logging.getLogger("uvicorn.error")

ENDPOINTS = {provider: f"/api/{provider}" for provider in PROVIDERS}


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    audit_logger = JsonlAuditLogger(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    app.state.audit_logger = audit_logger
    app.state.proxy_service = ProxyService.from_settings(
        settings,
        audit_hook=audit_logger.log,
    )
    logger.info(
        (
            "startup complete hf_keys=%d gemini_keys=%d gemini_model=%s "
            "cooldown_seconds=%.1f audit_log_enabled=%s audit_log_path=%s"
        ),
        len(settings.hf_keys_list),
        len(settings.gemini_keys_list),
        settings.gemini_model,
        settings.credential_cooldown_seconds,
        settings.proxy_audit_log_enabled,
        settings.proxy_audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    service: ProxyService | None = getattr(app.state, "proxy_service", None)
    if service is not None:
        await service.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _credential_pools(settings: Settings) -> dict[str, list[str]]:
    return {provider: settings.credential_pool(provider) for provider in ENDPOINTS}


async def _proxy_json_request(request: Request, provider: str) -> Response:
    request_id = request.headers.get("x-request-id") or uuid4().hex
    try:
        payload: Any = await request.json()
    except ValueError as exc:
        logger.warning(
            "proxy_invalid_body request_id=%s provider=%s error=%s",
            request_id,
            provider,
            exc,
        )
        return JSONResponse(
            status_code=500,
            content={"error": f"Invalid JSON body: {exc}"},
            headers={"x-proxy-request-id": request_id},
        )

    service: ProxyService = request.app.state.proxy_service
    pool = get_settings().credential_pool(provider)
    return await service.invoke(provider, payload, pool, request_id=request_id)


@app.post("/api/huggingface")
async def huggingface(request: Request) -> Response:
    return await _proxy_json_request(request, "huggingface")


@app.post("/api/gemini")
async def gemini(request: Request) -> Response:
    return await _proxy_json_request(request, "gemini")


@app.get("/")
@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    service: ProxyService = request.app.state.proxy_service
    return {
        "status": "ok",
        "service": "AI API Proxy",
        "endpoints": dict(ENDPOINTS),
        "stats": service.stats(_credential_pools(get_settings())),
    }


@app.options("/{path:path}")
async def preflight(request: Request, path: str) -> Response:
    # Preflights carrying Origin and Access-Control-Request-Method are answered
    # by CORSMiddleware; every other OPTIONS request lands here.
    headers = {
        "Access-Control-Allow-Methods": ", ".join(CORS_ALLOW_METHODS),
        "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
    }
    origins = get_settings().cors_allow_origins_list
    origin = request.headers.get("origin")
    if "*" in origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in origins:
        headers["Access-Control-Allow-Origin"] = origin
    return Response(status_code=200, headers=headers)


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> JSONResponse:
    return relay_error(exc)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code in (404, 405):
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("ai_key_proxy.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
