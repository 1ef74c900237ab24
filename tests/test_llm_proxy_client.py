from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest
import requests

from adapters.llm_proxy_client import LLMProxyClient, extract_error_message
from core.contracts import DetectRequest, HintPolicy, HintRequest, ParseTask
from core.errors import ExternalCallError


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session: FakeSession, timeout: float = 120) -> LLMProxyClient:
    return LLMProxyClient("http://proxy:8081/", timeout_seconds=timeout, connect_timeout_seconds=5, session=session)


def test_extract_error_message_order() -> None:
    assert extract_error_message(FakeResponse(500, {"error": "boom", "message": "other"})) == "boom"
    assert extract_error_message(FakeResponse(500, {"message": "flat message"})) == "flat message"
    assert extract_error_message(FakeResponse(500, {"error": {"message": "nested"}})) == "nested"
    assert extract_error_message(FakeResponse(502, None, text="Bad gateway\n")) == "Bad gateway"
    assert extract_error_message(FakeResponse(503, None, text="")) == "llm server http 503"


def test_post_sends_engine_and_forwards_budget() -> None:
    session = FakeSession(FakeResponse(200, {"ok": True}))

    data = _client(session).post("detect", "/v1/detect", "gemini", {"locale": "ru_RU"}, timeout=42.7)

    assert data == {"ok": True}
    call = session.calls[0]
    assert call["url"] == "http://proxy:8081/v1/detect"
    assert call["json"] == {"llm_name": "gemini", "locale": "ru_RU"}
    assert call["params"] == {"timeoutSec": 42}
    assert call["headers"] == {"X-Request-Timeout": "42"}
    assert call["timeout"] == (5.0, 42.7)


def test_post_uses_default_budget() -> None:
    session = FakeSession(FakeResponse(200, {}))

    _client(session, timeout=180).post("hint", "v1/hint", "gpt", {})

    assert session.calls[0]["params"] == {"timeoutSec": 180}
    assert session.calls[0]["url"] == "http://proxy:8081/v1/hint"


def test_http_error_raises_with_status_and_message() -> None:
    session = FakeSession(FakeResponse(429, {"error": {"message": "rate limited"}}))

    with pytest.raises(ExternalCallError) as excinfo:
        _client(session).post("hint", "/v1/hint", "gemini", {})

    assert excinfo.value.stage == "hint"
    assert excinfo.value.status_code == 429
    assert excinfo.value.message == "rate limited"


def test_timeout_and_network_errors_become_external_call_errors() -> None:
    with pytest.raises(ExternalCallError) as timeout:
        _client(FakeSession(error=requests.Timeout("slow"))).post("parse", "/v1/parse", "gemini", {})
    with pytest.raises(ExternalCallError) as network:
        _client(FakeSession(error=requests.ConnectionError("refused"))).post("parse", "/v1/parse", "gemini", {})

    assert "timeout" in timeout.value.message
    assert timeout.value.status_code is None
    assert "refused" in network.value.message


def test_invalid_json_and_non_object_bodies_are_errors() -> None:
    with pytest.raises(ExternalCallError):
        _client(FakeSession(FakeResponse(200, None, text="<html>"))).post("ocr", "/v1/ocr", "gemini", {})
    with pytest.raises(ExternalCallError):
        _client(FakeSession(FakeResponse(200, ["not", "an", "object"]))).post("ocr", "/v1/ocr", "gemini", {})


def test_detect_decodes_typed_result() -> None:
    body = {
        "tasks": [
            {"original_number": "3", "title_raw": "Реши задачу"},
            {"original_number": "4", "blocks": [{"block_raw": "Вычисли:\n12 + 5"}], "has_faces": True},
        ],
        "subject_hint": "Math",
        "confidence": 0.8,
    }
    session = FakeSession(FakeResponse(200, body))
    request = DetectRequest(images=("aGk=",), mime="image/jpeg", locale="ru_RU", grade_hint=3, max_tasks=3)

    result = asyncio.run(_client(session).detect("gemini", request))

    assert [task.label for task in result.tasks] == ["3 — Реши задачу", "4 — Вычисли:"]
    assert result.subject_hint == "math"
    assert result.subject_confidence == "medium"
    assert result.has_faces
    assert list(session.calls[0]["json"]["images"]) == ["aGk="]
    assert session.calls[0]["json"]["max_tasks"] == 3


def test_hint_request_serializes_nested_contracts() -> None:
    body = {"items": [{"item_id": "1", "hints": [{"level": "L2", "hint_text": "Сравни числа"}]}]}
    session = FakeSession(FakeResponse(200, body))
    request = HintRequest(
        task=ParseTask(subject="math", grade=2, task_text_clean="5 ? 7"),
        items=(),
        level=2,
        mode="rescue",
        applied_policy=HintPolicy(),
        locale="ru_RU",
        previous_hints=("Что больше?",),
        template={"template_id": "cmp"},
    )

    result = asyncio.run(_client(session).hint("gemini", request))

    sent = session.calls[0]["json"]
    assert sent["llm_name"] == "gemini"
    assert sent["task"]["task_text_clean"] == "5 ? 7"
    assert sent["applied_policy"]["max_hints"] == 3
    assert sent["template"] == {"template_id": "cmp"}
    assert result.texts_for_level(2) == ["Сравни числа"]


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        LLMProxyClient("")
