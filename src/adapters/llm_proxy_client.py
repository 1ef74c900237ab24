"""HTTP client for the LLM proxy.

Implements the core LLMPort. Each stage is one JSON POST; the blocking
``requests`` call runs in a worker thread so the Telethon loop keeps serving
other chats while a stage is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional
from urllib.parse import urljoin

import requests

from core.contracts import (
    AnalogueRequest,
    AnalogueResult,
    CheckRequest,
    CheckResult,
    DetectRequest,
    DetectResult,
    HintRequest,
    HintResult,
    NormalizeRequest,
    NormalizeResult,
    OCRRequest,
    OCRResult,
    ParseRequest,
    ParseResult,
)
from core.errors import ExternalCallError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 180.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
TIMEOUT_HEADER = "X-Request-Timeout"


def extract_error_message(response: requests.Response) -> str:
    """Best-effort error text from a failed proxy response.

    Order: flat ``error``/``message``, nested ``error.message``, raw body,
    then the bare status code.
    """

    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in ("error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        nested = data.get("error")
        if isinstance(nested, dict):
            message = nested.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()

    body = (response.text or "").strip()
    if body:
        return body[:500]
    return f"llm server http {response.status_code}"


class LLMProxyClient:
    """Blocking transport plus async stage methods."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("LLM proxy base URL is required")
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = float(timeout_seconds)
        self._connect_timeout = min(float(connect_timeout_seconds), self._timeout)
        self._session = session or requests.Session()

    def post(self, stage: str, path: str, engine: str, payload: dict[str, Any], timeout: Optional[float] = None) -> dict:
        """POST one stage request and return the decoded JSON body.

        The remaining budget is forwarded as ``?timeoutSec=N`` and in the
        ``X-Request-Timeout`` header so the proxy can stop early.
        """

        budget = float(timeout or self._timeout)
        remaining = max(1, int(budget))
        body = {"llm_name": engine}
        body.update(payload)

        started = time.monotonic()
        try:
            response = self._session.post(
                urljoin(self._base_url, path.lstrip("/")),
                params={"timeoutSec": remaining},
                headers={TIMEOUT_HEADER: str(remaining)},
                json=body,
                timeout=(self._connect_timeout, budget),
            )
        except requests.Timeout as exc:
            raise ExternalCallError(stage, f"timeout after {budget:.0f}s") from exc
        except requests.RequestException as exc:
            raise ExternalCallError(stage, f"request failed: {exc}") from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            message = extract_error_message(response)
            LOGGER.warning("LLM proxy %s -> HTTP %s in %d ms: %s", path, response.status_code, elapsed_ms, message)
            raise ExternalCallError(stage, message, response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalCallError(stage, "invalid JSON in response", response.status_code) from exc
        if not isinstance(data, dict):
            raise ExternalCallError(stage, "unexpected response shape", response.status_code)
        LOGGER.debug("LLM proxy %s ok in %d ms", path, elapsed_ms)
        return data

    async def _call(self, stage: str, path: str, engine: str, request: Any) -> dict:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.post, stage, path, engine, request.to_payload()),
                timeout=self._timeout + self._connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalCallError(stage, f"timeout after {self._timeout:.0f}s") from exc

    async def detect(self, engine: str, request: DetectRequest) -> DetectResult:
        return DetectResult.from_payload(await self._call("detect", "/v1/detect", engine, request))

    async def parse(self, engine: str, request: ParseRequest) -> ParseResult:
        return ParseResult.from_payload(await self._call("parse", "/v1/parse", engine, request))

    async def hint(self, engine: str, request: HintRequest) -> HintResult:
        return HintResult.from_payload(await self._call("hint", "/v1/hint", engine, request))

    async def ocr(self, engine: str, request: OCRRequest) -> OCRResult:
        return OCRResult.from_payload(await self._call("ocr", "/v1/ocr", engine, request))

    async def normalize(self, engine: str, request: NormalizeRequest) -> NormalizeResult:
        return NormalizeResult.from_payload(await self._call("normalize", "/v1/normalize", engine, request))

    async def check_solution(self, engine: str, request: CheckRequest) -> CheckResult:
        return CheckResult.from_payload(await self._call("check", "/v1/check_solution", engine, request))

    async def analogue_solution(self, engine: str, request: AnalogueRequest) -> AnalogueResult:
        return AnalogueResult.from_payload(await self._call("analogue", "/v1/analogue_solution", engine, request))
