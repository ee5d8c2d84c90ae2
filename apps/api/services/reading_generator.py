"""Content generation collaborator: reading text and optional narration audio."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
import time

from openai import AsyncOpenAI

from config import settings

logger = logging.getLogger(__name__)

LANGUAGE_BY_LOCALE = {"en": "English", "tr": "Turkish", "sr": "Serbian"}


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key)


class ReadingGenerator:
    """Thin wrapper over the LLM and TTS endpoints."""

    def __init__(self, api_key: str, model: str, tts_model: str) -> None:
        self.client = get_openai_client(api_key)
        self.model = model
        self.tts_model = tts_model

    @property
    def audio_enabled(self) -> bool:
        return self.client is not None

    async def generate_text(self, reading_type: str, question: str, locale: str) -> str:
        language = LANGUAGE_BY_LOCALE.get(locale, "English")
        if self.client is None:
            logger.warning("Using MOCK reading generation.")
            return f"[{reading_type} reading in {language}] The signs around your question are calm: {question.strip()[:80]}"

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": f"You are a warm fortune teller giving a {reading_type} reading. Answer in {language}.",
                },
                {"role": "user", "content": question},
            ],
        )
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise RuntimeError("Reading model returned an empty response")
        return text

    async def synthesize_audio(self, text: str) -> bytes:
        if self.client is None:
            raise RuntimeError("Audio synthesis requires an OpenAI API key")
        response = await self.client.audio.speech.create(model=self.tts_model, voice="nova", input=text)
        return response.content


def get_reading_generator() -> ReadingGenerator:
    return ReadingGenerator(settings.OPENAI_API_KEY, settings.READING_MODEL, settings.TTS_MODEL)


def store_audio(reading_id: str, audio: bytes) -> str:
    """Write narration audio to the configured directory and return its path."""
    target_dir = Path(settings.READING_AUDIO_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{reading_id}-{int(time.time())}.mp3"
    target.write_bytes(audio)
    return str(target)
