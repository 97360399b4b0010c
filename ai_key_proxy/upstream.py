from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from ai_key_proxy.errors import MissingContents, MissingModel
from ai_key_proxy.retry_policy import GEMINI_POLICY, HUGGINGFACE_POLICY, RetryPolicy

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}


@dataclass(slots=True)
class UpstreamRequestSpec:
    url: str
    payload: dict[str, Any]
    headers: dict[str, str]
    params: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class UpstreamResult:
    status_code: int
    headers: dict[str, str]
    content: bytes

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return ""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _drop_none_fields(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class UpstreamCaller:
    provider: str = ""
    policy: RetryPolicy

    def validate(self, payload: Any) -> None:
        raise NotImplementedError

    def build_request(self, payload: dict[str, Any], credential: str) -> UpstreamRequestSpec:
        raise NotImplementedError

    async def send(
        self, client: httpx.AsyncClient, spec: UpstreamRequestSpec
    ) -> UpstreamResult:
        response = await client.post(
            spec.url,
            json=spec.payload,
            headers=spec.headers,
            params=spec.params or None,
        )
        return UpstreamResult(
            status_code=response.status_code,
            headers=_filter_response_headers(response.headers),
            content=response.content,
        )


class HuggingFaceCaller(UpstreamCaller):
    provider = "huggingface"
    policy = HUGGINGFACE_POLICY

    def __init__(self, base_url: str = "https://api-inference.huggingface.co") -> None:
        self.base_url = base_url.rstrip("/")

    def validate(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("model"):
            raise MissingModel()

    def build_request(self, payload: dict[str, Any], credential: str) -> UpstreamRequestSpec:
        return UpstreamRequestSpec(
            url=f"{self.base_url}/models/{payload['model']}",
            payload=_drop_none_fields(
                {
                    "inputs": payload.get("inputs"),
                    "parameters": payload.get("parameters"),
                }
            ),
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
            },
        )


class GeminiCaller(UpstreamCaller):
    provider = "gemini"
    policy = GEMINI_POLICY

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.5-pro",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model

    def validate(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("contents"):
            raise MissingContents()

    def build_request(self, payload: dict[str, Any], credential: str) -> UpstreamRequestSpec:
        return UpstreamRequestSpec(
            url=f"{self.base_url}/v1beta/models/{self.model}:generateContent",
            payload=_drop_none_fields(
                {
                    "contents": payload.get("contents"),
                    "generationConfig": payload.get("generationConfig"),
                }
            ),
            headers={"Content-Type": "application/json"},
            params={"key": credential},
        )
