# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from _pytest.monkeypatch import MonkeyPatch

from portraitist.core.errors import VendorHTTPError
from portraitist.services.analysis import (
    DESCRIPTION_FALLBACK_CHARS,
    FALLBACK_PROMPT,
    OpenAIVisionAnalyzer,
    analyze_and_generate_prompt,
    build_prompt_from_analysis,
    extract_json_object,
    parse_analysis,
)


def test_extract_json_object_skips_prose_and_braces_in_strings() -> None:
    text = 'Sure! Here it is: {"description": "a cat {curled} up", "mood": "calm"} Hope it helps.'
    assert extract_json_object(text) == {"description": "a cat {curled} up", "mood": "calm"}


def test_extract_json_object_handles_fenced_reply() -> None:
    text = '```json\n{"labels": [{"description": "Dog", "score": 0.9}]}\n```'
    parsed = extract_json_object(text)
    assert parsed is not None
    assert parsed["labels"] == [{"description": "Dog", "score": 0.9}]


def test_extract_json_object_returns_none_without_object() -> None:
    assert extract_json_object("no json here") is None
    assert extract_json_object("{broken") is None


def test_parse_analysis_falls_back_to_truncated_description() -> None:
    text = "x" * (DESCRIPTION_FALLBACK_CHARS + 50)
    result = parse_analysis(text, model="m")
    assert result["description"] == "x" * DESCRIPTION_FALLBACK_CHARS
    assert result["raw_response"] == text
    assert result["model"] == "m"
    assert "timestamp" in result


def test_build_prompt_uses_top_labels_text_and_mood() -> None:
    prompt = build_prompt_from_analysis(
        {
            "labels": [
                {"description": "Cat"},
                {"description": "Whiskers"},
                {"description": "Pet"},
                {"description": "Sofa"},
            ],
            "text": "HELLO " * 20,
            "mood": "Serene",
        }
    )
    assert prompt.startswith("A beautiful artistic representation of cat, whiskers, pet")
    assert "sofa" not in prompt
    assert 'with text "' in prompt
    assert ", evoking a serene mood" in prompt
    assert prompt.endswith(", highly detailed, professional quality")


def test_build_prompt_without_signal_uses_fallback() -> None:
    assert build_prompt_from_analysis({}) == FALLBACK_PROMPT


def _mock_chat(monkeypatch: MonkeyPatch, replies: list[httpx.Response]) -> list[httpx.Request]:
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return replies.pop(0)

    def _factory(**kwargs: object) -> httpx.AsyncClient:
        return real_client(transport=httpx.MockTransport(_handler), **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(httpx, "AsyncClient", _factory)
    return seen


def _chat(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _analyzer() -> OpenAIVisionAnalyzer:
    return OpenAIVisionAnalyzer(
        base_url="https://vision.test", api_key="sk-test", model="gpt-4o-mini", timeout_s=5.0
    )


def test_openai_analyzer_sends_data_url_and_parses_reply(monkeypatch: MonkeyPatch) -> None:
    seen = _mock_chat(
        monkeypatch,
        [
            _chat('{"labels": [{"description": "Parrot"}], "mood": "bright"}'),
            _chat("  A regal parrot in oils  "),
        ],
    )

    analysis, prompt = asyncio.run(
        analyze_and_generate_prompt(_analyzer(), b"\x89PNGdata", "image/png")
    )
    assert analysis["labels"] == [{"description": "Parrot"}]
    assert analysis["model"] == "gpt-4o-mini"
    assert prompt == "A regal parrot in oils"

    assert str(seen[0].url) == "https://vision.test/v1/chat/completions"
    body = json.loads(seen[0].read())
    parts = body["messages"][0]["content"]
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
    # The raw reply is not echoed back into the prompt request.
    assert "raw_response" not in json.loads(seen[1].read())["messages"][0]["content"]


def test_failed_analysis_yields_fallback_prompt(monkeypatch: MonkeyPatch) -> None:
    _ = _mock_chat(monkeypatch, [httpx.Response(500, text="boom")])

    analysis, prompt = asyncio.run(
        analyze_and_generate_prompt(_analyzer(), b"\x89PNGdata", "image/png")
    )
    assert analysis == {}
    assert prompt == FALLBACK_PROMPT


def test_failed_prompt_generation_yields_fallback(monkeypatch: MonkeyPatch) -> None:
    _ = _mock_chat(
        monkeypatch,
        [_chat('{"description": "a dog"}'), httpx.Response(503, text="busy")],
    )

    analysis, prompt = asyncio.run(
        analyze_and_generate_prompt(_analyzer(), b"\x89PNGdata", "image/png")
    )
    assert analysis["description"] == "a dog"
    assert prompt == FALLBACK_PROMPT


def test_analyze_raises_upstream_errors(monkeypatch: MonkeyPatch) -> None:
    _ = _mock_chat(monkeypatch, [httpx.Response(401, text="bad key")])
    with pytest.raises(VendorHTTPError):
        _ = asyncio.run(_analyzer().analyze(b"data", "image/jpeg"))
