from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Protocol

from ..http_client import HttpRequestError, post_json
from ..models import UsageMetadata


class BackendNotConfiguredError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ExtractionRequest:
    document: bytes
    mime_type: str
    system_instruction: str
    prompt: str
    response_schema: dict


@dataclass(frozen=True, slots=True)
class ExtractionResponse:
    text: str
    usage: UsageMetadata | None = None


class ExtractionBackend(Protocol):
    def generate(self, model: str, request: ExtractionRequest) -> ExtractionResponse: ...


@dataclass(frozen=True, slots=True)
class GeminiBackend:
    api_key: str | None
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_s: float = 120.0

    def generate(self, model: str, request: ExtractionRequest) -> ExtractionResponse:
        if not self.api_key:
            raise BackendNotConfiguredError("No API key configured. Set GEMINI_API_KEY (or API_KEY).")

        payload = build_payload(request)
        result = post_json(
            f"{self.base_url.rstrip('/')}/models/{model}:generateContent",
            payload,
            timeout_s=self.timeout_s,
            headers={"x-goog-api-key": self.api_key},
        )
        return parse_generate_content(result, model=model)


def build_payload(request: ExtractionRequest) -> dict:
    return {
        "systemInstruction": {"parts": [{"text": request.system_instruction}]},
        "contents": [
            {
                "role": "user",
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": request.mime_type,
                            "data": base64.b64encode(request.document).decode("ascii"),
                        }
                    },
                    {"text": request.prompt},
                ],
            }
        ],
        "generationConfig": {
            "responseMimeType": "application/json",
            "responseSchema": request.response_schema,
        },
    }


def parse_generate_content(result: dict, *, model: str | None = None) -> ExtractionResponse:
    error = result.get("error")
    if isinstance(error, dict):
        raise HttpRequestError(str(error.get("message") or error), status=_int_or_none(error.get("code")))

    texts: list[str] = []
    for candidate in result.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            if isinstance(part, dict) and part.get("text"):
                texts.append(str(part["text"]))
        if texts:
            break

    usage = None
    raw_usage = result.get("usageMetadata")
    if isinstance(raw_usage, dict):
        usage = UsageMetadata(
            prompt_token_count=int(raw_usage.get("promptTokenCount") or 0),
            candidates_token_count=int(raw_usage.get("candidatesTokenCount") or 0),
            total_token_count=int(raw_usage.get("totalTokenCount") or 0),
            model=model,
        )
    return ExtractionResponse(text="".join(texts), usage=usage)


def _int_or_none(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
