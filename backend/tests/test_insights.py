from __future__ import annotations

import json
import time

import pytest

pytest.importorskip("google.auth")

from app.insights import VertexInsightGenerator, parse_insight_response, transcript

from conftest import make_messages


ANSWER = {
    "summary": "The user talked through work stress. They found a first step.",
    "strengths": ["self-reflection"],
    "recommendations": ["Keep a short evening journal"],
    "ocean_signals": {
        "openness": 0.7,
        "conscientiousness": 0.55,
        "extraversion": 0.3,
        "agreeableness": 0.8,
        "neuroticism": 0.6,
    },
}


def _response(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def test_parse_valid_response() -> None:
    parsed = parse_insight_response(_response(json.dumps(ANSWER)))

    assert parsed is not None
    assert parsed["insights"]["summary"].startswith("The user talked")
    assert parsed["ocean_signals"]["neuroticism"] == 0.6


def test_parse_strips_markdown_fences() -> None:
    fenced = "```json\n" + json.dumps(ANSWER) + "\n```"

    parsed = parse_insight_response(_response(fenced))

    assert parsed is not None
    assert parsed["insights"]["strengths"] == ["self-reflection"]


def test_parse_rejects_invalid_json_and_missing_candidates() -> None:
    assert parse_insight_response(_response("Here are your insights!")) is None
    assert parse_insight_response({"candidates": []}) is None
    assert parse_insight_response({}) is None


def test_parse_rejects_out_of_range_signals() -> None:
    answer = json.loads(json.dumps(ANSWER))
    answer["ocean_signals"]["openness"] = 1.4

    assert parse_insight_response(_response(json.dumps(answer))) is None


def test_transcript_lists_roles() -> None:
    messages = make_messages(("user", "Hi"), ("assistant", "Hello, how are you?"))

    assert transcript(messages) == "user: Hi\nassistant: Hello, how are you?"


def test_endpoint_uses_project_location_and_model() -> None:
    generator = VertexInsightGenerator(model_id="gemini-2.5-flash", location="europe-west1", project_id="confide-dev")

    assert generator.endpoint == (
        "https://europe-west1-aiplatform.googleapis.com/v1/projects/confide-dev"
        "/locations/europe-west1/publishers/google/models/gemini-2.5-flash:generateContent"
    )


@pytest.mark.asyncio
async def test_generate_parses_the_model_answer(monkeypatch: pytest.MonkeyPatch) -> None:
    generator = VertexInsightGenerator(model_id="m", location="us-central1", project_id="p")
    bodies: list[dict] = []

    def fake_post(body: dict) -> dict:
        bodies.append(body)
        return _response(json.dumps(ANSWER))

    monkeypatch.setattr(generator, "_post", fake_post)

    result = await generator.generate(make_messages(("user", "Work has been a lot lately")))

    assert result is not None and result["ocean_signals"]["openness"] == 0.7
    assert "user: Work has been a lot lately" in bodies[0]["contents"][0]["parts"][0]["text"]


@pytest.mark.asyncio
async def test_generate_returns_none_on_timeout_or_error(monkeypatch: pytest.MonkeyPatch) -> None:
    slow = VertexInsightGenerator(model_id="m", location="l", project_id="p", timeout_seconds=0.05)
    broken = VertexInsightGenerator(model_id="m", location="l", project_id="p")

    def slow_post(_body: dict) -> dict:
        time.sleep(0.3)
        return _response(json.dumps(ANSWER))

    def broken_post(_body: dict) -> dict:
        raise RuntimeError("403 Forbidden")

    monkeypatch.setattr(slow, "_post", slow_post)
    monkeypatch.setattr(broken, "_post", broken_post)
    messages = make_messages(("user", "hello"))

    assert await slow.generate(messages) is None
    assert await broken.generate(messages) is None
    assert await broken.generate([]) is None
