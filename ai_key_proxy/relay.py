from __future__ import annotations

import json
from typing import Any

from fastapi.responses import JSONResponse, Response

from ai_key_proxy.errors import ProxyError
from ai_key_proxy.orchestrator import ProxyOutcome

BINARY_MEDIA_MARKERS = ("image", "audio")


def _is_binary_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    lowered = content_type.lower()
    return any(marker in lowered for marker in BINARY_MEDIA_MARKERS)


def _is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _decode_body(content: bytes, content_type: str | None) -> Any:
    text = content.decode("utf-8", errors="replace")
    if not _is_json_content_type(content_type):
        return text
    try:
        return json.loads(text)
    except ValueError:
        return text


def relay_outcome(
    outcome: ProxyOutcome,
    *,
    provider: str,
    request_id: str,
) -> Response:
    """Turn a terminal upstream response into the caller-facing response.

    Image and audio bodies pass through untouched. Everything else is
    re-encoded as JSON under the upstream status, so a plain-text body becomes
    a JSON string.
    """
    result = outcome.result
    headers = {
        "x-proxy-request-id": request_id,
        "x-proxy-provider": provider,
        "x-proxy-attempts": str(outcome.attempts),
    }
    content_type = result.content_type
    if _is_binary_content_type(content_type):
        return Response(
            content=result.content,
            status_code=result.status_code,
            headers=headers,
            media_type=content_type,
        )

    return JSONResponse(
        status_code=result.status_code,
        content=_decode_body(result.content, content_type),
        headers=headers,
    )


def relay_error(
    exc: ProxyError,
    *,
    provider: str | None = None,
    request_id: str | None = None,
) -> JSONResponse:
    headers: dict[str, str] = {}
    if request_id:
        headers["x-proxy-request-id"] = request_id
    if provider:
        headers["x-proxy-provider"] = provider
    attempts = getattr(exc, "attempts", None)
    if isinstance(attempts, int):
        headers["x-proxy-attempts"] = str(attempts)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_content(),
        headers=headers,
    )
