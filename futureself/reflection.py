"""
Reflection extraction: onboarding transcript -> {goals, fears, situation,
currentWork, otherNotes} via an LLM call under a strict JSON schema.

Personalisation is best-effort. ``personalize`` never raises; it returns
``Personalized`` or ``Generic`` and the caller builds the prompt from that.
"""

from __future__ import annotations

import json
from typing import Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from futureself.config import Settings
from futureself.errors import ExtractionError, Failure
from futureself.models import Generic, PersonalizationResult, Personalized, Reflection

log = structlog.get_logger(__name__)

EXTRACTION_PROMPT = (
    "Extract goals, fears, and situation from the transcript. Be faithful to the "
    "transcript. Keep items short and concrete. If something isn't mentioned, use "
    "empty arrays or nulls where appropriate."
)

# Strict mode needs every property listed in `required`; optional ones allow null.
REFLECTION_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "goals": {"type": "array", "items": {"type": "string"}},
        "fears": {"type": "array", "items": {"type": "string"}},
        "situation": {"type": "string"},
        "currentWork": {"type": ["string", "null"]},
        "otherNotes": {"type": ["string", "null"]},
    },
    "required": ["goals", "fears", "situation", "currentWork", "otherNotes"],
}


class ReflectionExtractor:
    """Wraps the OpenAI Responses API with the reflection schema."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.model = settings.openai_model
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key or None)

    async def extract(self, transcript: str) -> Reflection:
        try:
            response = await self.client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": EXTRACTION_PROMPT},
                    {"role": "user", "content": transcript},
                ],
                text={
                    "format": {
                        "type": "json_schema",
                        "name": "reflection_extract",
                        "strict": True,
                        "schema": REFLECTION_SCHEMA,
                    }
                },
            )
        except OpenAIError as e:
            raise ExtractionError(f"OpenAI extract failed: {e}") from e

        output_text = getattr(response, "output_text", None)
        if not output_text:
            raise ExtractionError("OpenAI returned no output_text")

        try:
            return Reflection.from_extraction(json.loads(output_text))
        except (ValueError, TypeError) as e:
            raise ExtractionError(f"Reflection output violated schema: {e}") from e

    async def close(self) -> None:
        await self.client.close()


async def personalize(
    provider,
    extractor: ReflectionExtractor,
    audio: bytes,
    content_type: str,
) -> PersonalizationResult:
    """
    Transcribe ``audio`` with ``provider`` and extract a reflection from it.
    Any failure along the way degrades to ``Generic``.
    """
    try:
        transcript = await provider.transcribe(audio, content_type)
        reflection = await extractor.extract(transcript)
    except Failure as e:
        log.warning("personalization_skipped", kind=e.kind, error=e.message[:300])
        return Generic(reason=e.kind)
    return Personalized(reflection=reflection, transcript=transcript)
