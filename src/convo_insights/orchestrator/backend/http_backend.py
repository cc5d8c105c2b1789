"""Remote structured-generation backend over the Gemini ``generateContent`` API."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from convo_insights.config import (
    GEMINI_DEFAULT_BASE_URL,
    GEMINI_DEFAULT_MODEL,
    HttpBackendSettings,
)
from convo_insights.orchestrator.backend.base import AnalysisRequest
from convo_insights.orchestrator.errors import (
    AnalysisTimeout,
    AuthenticationRequired,
    BackendRunError,
    InvalidResponse,
    PayloadTooLarge,
)
from convo_insights.orchestrator.models import BackendKind
from convo_insights.orchestrator.output_fallback import normalize_json_text
from convo_insights.orchestrator.redaction import sanitize_preview

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-goog-api-key"
_CONNECT_TIMEOUT_SECONDS = 10.0


class GeminiBackend:
    """Send one analysis request as a JSON-constrained ``generateContent`` call."""

    kind = BackendKind.GEMINI

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = GEMINI_DEFAULT_MODEL,
        base_url: str = GEMINI_DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        token_budget: int = 100_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.token_budget: int | None = token_budget
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: HttpBackendSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GeminiBackend:
        if not settings.configured or settings.api_key is None:
            raise AuthenticationRequired("Gemini API key is not configured.")
        return cls(
            api_key=settings.api_key.strip(),
            model=settings.model,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            token_budget=settings.token_budget,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    def build_body(self, request: AnalysisRequest) -> dict[str, Any]:
        generation_config: dict[str, Any] = {"responseMimeType": "application/json"}
        if request.response_schema:
            generation_config["responseJsonSchema"] = request.response_schema
        return {
            "contents": [{"parts": [{"text": request.render_input()}]}],
            "generationConfig": generation_config,
        }

    async def analyze(self, request: AnalysisRequest) -> str:
        body = self.build_body(request)
        async with self._client() as client:
            try:
                response = await client.post(
                    self.endpoint,
                    json=body,
                    headers={API_KEY_HEADER: self.api_key},
                )
            except httpx.TimeoutException as error:
                raise AnalysisTimeout(
                    f"Gemini request timed out after {self.timeout_seconds:.0f}s",
                    timeout_seconds=self.timeout_seconds,
                ) from error
            except httpx.HTTPError as error:
                raise BackendRunError(f"Gemini request failed: {error}", transient=True) from error

        _raise_for_status(response, request_bytes=len(json.dumps(body).encode("utf-8")))
        return normalize_json_text(extract_candidate_text(_response_json(response)))

    async def validate_api_key(self) -> bool:
        """True when the models listing accepts the configured key."""

        async with self._client() as client:
            try:
                response = await client.get(
                    self.base_url,
                    headers={API_KEY_HEADER: self.api_key},
                )
            except httpx.HTTPError as error:
                logger.warning("Gemini key validation failed: %s", error)
                return False
        return response.status_code == httpx.codes.OK

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=_CONNECT_TIMEOUT_SECONDS),
            transport=self._transport,
        )


def extract_candidate_text(payload: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""

    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise InvalidResponse("Gemini response has no candidates.")
    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise InvalidResponse("Gemini candidate has no content parts.")
    text = "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )
    if not text.strip():
        raise InvalidResponse("Gemini candidate contains no text.")
    return text


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as error:
        raise InvalidResponse(
            f"Gemini response is not JSON: {sanitize_preview(response.text, max_chars=200)!r}",
        ) from error
    if not isinstance(payload, dict):
        raise InvalidResponse("Gemini response must be a JSON object.")
    return payload


def _raise_for_status(response: httpx.Response, *, request_bytes: int) -> None:
    status = response.status_code
    if status < httpx.codes.BAD_REQUEST:
        return
    detail = sanitize_preview(response.text, max_chars=500) or response.reason_phrase
    if status in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
        raise AuthenticationRequired(f"Gemini rejected the API key ({status}): {detail}")
    if status == httpx.codes.REQUEST_ENTITY_TOO_LARGE:
        raise PayloadTooLarge(size_bytes=request_bytes, max_bytes=None)
    transient = status == httpx.codes.TOO_MANY_REQUESTS or status >= 500  # noqa: PLR2004
    raise BackendRunError(f"Gemini returned HTTP {status}: {detail}", transient=transient)
