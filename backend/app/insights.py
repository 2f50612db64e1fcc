"""Post-session insight generation through Vertex AI.

Completion asks an `InsightGenerator` for a short written summary and an
OCEAN signal vector.  The Vertex implementation is a single blocking
`generateContent` call made from a worker thread; any failure or timeout
yields `None` and the session completes without insights.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, Sequence

from google.auth import default as google_auth_default
from google.auth.transport.requests import AuthorizedSession
from pydantic import BaseModel, Field, ValidationError

from .live.records import MessageRecord


logger = logging.getLogger("confide")

VERTEX_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

INSIGHT_INSTRUCTION = (
    "Read the conversation below and answer with a JSON object containing "
    '"summary" (two sentences), "strengths" (list of strings), '
    '"recommendations" (list of strings) and "ocean_signals" with the keys '
    "openness, conscientiousness, extraversion, agreeableness and neuroticism, "
    "each a number between 0 and 1."
)


class OceanSignals(BaseModel):
    openness: float = Field(ge=0.0, le=1.0)
    conscientiousness: float = Field(ge=0.0, le=1.0)
    extraversion: float = Field(ge=0.0, le=1.0)
    agreeableness: float = Field(ge=0.0, le=1.0)
    neuroticism: float = Field(ge=0.0, le=1.0)


class InsightPayload(BaseModel):
    summary: str
    strengths: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    ocean_signals: OceanSignals


class InsightGenerator(Protocol):
    async def generate(self, messages: Sequence[MessageRecord]) -> dict[str, Any] | None: ...


def transcript(messages: Sequence[MessageRecord]) -> str:
    return "\n".join(f"{message.role}: {message.content}" for message in messages)


def _strip_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```"):
        clean = clean.split("\n", 1)[1] if "\n" in clean else ""
        if clean.rstrip().endswith("```"):
            clean = clean.rstrip()[:-3]
    return clean.strip()


def parse_insight_response(response: dict[str, Any]) -> dict[str, Any] | None:
    """Extract and validate the JSON answer from a generateContent response."""
    try:
        parts = response["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Insight response carried no candidate content")
        return None
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    try:
        payload = InsightPayload.model_validate(json.loads(_strip_fences(text)))
    except json.JSONDecodeError as exc:
        logger.warning("Insight response was not valid JSON: %s", exc)
        return None
    except ValidationError as exc:
        logger.warning("Insight response failed validation: %s", exc)
        return None
    return {
        "insights": {
            "summary": payload.summary,
            "strengths": payload.strengths,
            "recommendations": payload.recommendations,
        },
        "ocean_signals": payload.ocean_signals.model_dump(),
    }


class VertexInsightGenerator:
    """Calls the Vertex AI `generateContent` REST endpoint."""

    def __init__(
        self,
        *,
        model_id: str,
        location: str,
        project_id: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.model_id = model_id
        self.location = location
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds
        self._session: AuthorizedSession | None = None

    @property
    def endpoint(self) -> str:
        return (
            f"https://{self.location}-aiplatform.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{self.location}/publishers/google/models/{self.model_id}:generateContent"
        )

    def _authorized_session(self) -> AuthorizedSession:
        if self._session is None:
            credentials, detected_project_id = google_auth_default(scopes=[VERTEX_SCOPE])
            if not self.project_id:
                self.project_id = detected_project_id or ""
            if not self.project_id:
                raise RuntimeError(
                    "Google Cloud project id is unavailable. Set CONFIDE_PROJECT_ID or GOOGLE_CLOUD_PROJECT."
                )
            self._session = AuthorizedSession(credentials)
        return self._session

    def _request_body(self, messages: Sequence[MessageRecord]) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": f"{INSIGHT_INSTRUCTION}\n\n{transcript(messages)}"}],
                }
            ],
            "generationConfig": {"responseMimeType": "application/json", "temperature": 0.2},
        }

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        session = self._authorized_session()
        response = session.post(self.endpoint, json=body, timeout=self.timeout_seconds)
        response.raise_for_status()
        return response.json()

    async def generate(self, messages: Sequence[MessageRecord]) -> dict[str, Any] | None:
        if not messages:
            return None
        body = self._request_body(messages)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self._post, body), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Insight generation timed out after %.1fs", self.timeout_seconds)
            return None
        except Exception as exc:
            logger.exception("Insight generation failed: %s", exc)
            return None
        return parse_insight_response(response)
