"""Text-to-speech for flow prompts.

Audio is content-addressed: sha256 of the text plus the voice. Synthesized
files go to media storage and the URL is remembered in `tts_cache`, so a
prompt shared by several flows is generated once.
"""

from __future__ import annotations

import asyncio
import hashlib

from loguru import logger

from config import settings
from db import execute, query_one
from flows.models import DEFAULT_VOICE, TTS_VOICES
from lib.circuit_breaker import CircuitBreaker
from lib.sanitize import truncate
from services.media import store_media

_openai_client = None
_breaker = CircuitBreaker("openai_tts", failure_threshold=3, recovery_timeout=60.0, call_timeout=30.0)

TTS_INSTRUCTIONS = "Speak clearly and warmly, at a relaxed pace suitable for a phone line."


def _get_openai():
    global _openai_client
    if _openai_client is None:
        api_key = settings.openai_api_key
        if not api_key:
            logger.warning("OPENAI_API_KEY not set, speech synthesis disabled")
            return None
        from openai import OpenAI
        _openai_client = OpenAI(api_key=api_key)
    return _openai_client


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


async def get_cached_audio(text: str, voice: str) -> str | None:
    row = await query_one(
        "SELECT audio_url FROM tts_cache WHERE text_hash = $1 AND voice = $2",
        text_hash(text),
        voice,
    )
    return row["audio_url"] if row else None


async def _generate(text: str, voice: str) -> bytes | None:
    client = _get_openai()
    if client is None:
        return None

    def _create() -> bytes:
        response = client.audio.speech.create(
            model=settings.tts_model,
            voice=voice,
            input=text,
            instructions=TTS_INSTRUCTIONS,
            response_format="mp3",
        )
        return response.content

    return await _breaker.call(asyncio.to_thread(_create), fallback=None)


async def synthesize_speech(text: str, voice: str = DEFAULT_VOICE) -> str | None:
    """Return a URL of `text` spoken in `voice`, synthesizing it if not cached.

    Returns None when synthesis is unavailable; callers fall back to <Say>.
    """
    if not text or not text.strip():
        return None
    if voice not in TTS_VOICES:
        voice = DEFAULT_VOICE

    cached = await get_cached_audio(text, voice)
    if cached:
        logger.debug("TTS cache hit for '{t}'", t=truncate(text, 40))
        return cached

    audio = await _generate(text, voice)
    if not audio:
        return None

    digest = text_hash(text)
    url = await store_media(audio, "tts", "mp3", name=f"{digest}_{voice}")
    await execute(
        """INSERT INTO tts_cache (text_hash, voice, text, audio_url)
           VALUES ($1, $2, $3, $4)
           ON CONFLICT (text_hash, voice) DO UPDATE SET audio_url = EXCLUDED.audio_url""",
        digest,
        voice,
        text,
        url,
    )
    logger.info("Synthesized {n} bytes for '{t}' ({v})", n=len(audio), t=truncate(text, 40), v=voice)
    return url
