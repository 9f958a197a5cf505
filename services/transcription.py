"""Audio transcription with speaker diarization (OpenAI).

Speaker labels from the provider are renamed to "Speaker 1", "Speaker 2", ...
in order of first appearance.
"""

from __future__ import annotations

import asyncio

import httpx
from loguru import logger

from config import settings
from lib.circuit_breaker import CircuitBreaker
from services.transcripts import Transcript, Utterance

_openai_client = None
_breaker = CircuitBreaker("openai_transcription", failure_threshold=3, recovery_timeout=120.0, call_timeout=300.0)


def _get_openai():
    global _openai_client
    if _openai_client is None:
        api_key = settings.openai_api_key
        if not api_key:
            logger.warning("OPENAI_API_KEY not set, transcription disabled")
            return None
        from openai import OpenAI
        _openai_client = OpenAI(api_key=api_key)
    return _openai_client


def _field(obj, name, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_diarized(result) -> Transcript:
    """Normalize a diarized_json response (object or dict) into a Transcript."""
    text = _field(result, "text") or ""
    duration = float(_field(result, "duration") or 0)
    raw_segments = _field(result, "segments") or []

    if not raw_segments:
        return Transcript(
            text=text,
            duration=duration,
            segments=[Utterance(start=0.0, end=duration, text=text, speaker="Speaker 1")],
        )

    speakers: dict[str, str] = {}
    utterances = []
    for seg in raw_segments:
        label = _field(seg, "speaker") or "unknown"
        if label not in speakers:
            speakers[label] = f"Speaker {len(speakers) + 1}"
        utterances.append(Utterance(
            start=float(_field(seg, "start") or 0),
            end=float(_field(seg, "end") or 0),
            text=(_field(seg, "text") or "").strip(),
            speaker=speakers[label],
        ))

    return Transcript(
        text=text,
        duration=duration or utterances[-1].end,
        segments=utterances,
    )


async def transcribe_audio(audio: bytes, filename: str = "recording.mp3") -> Transcript | None:
    """Transcribe an audio file. Returns None when unavailable or failed."""
    client = _get_openai()
    if client is None:
        return None

    def _create():
        return client.audio.transcriptions.create(
            file=(filename, audio, "audio/mpeg"),
            model=settings.transcription_model,
            response_format="diarized_json",
            chunking_strategy="auto",
        )

    result = await _breaker.call(asyncio.to_thread(_create), fallback=None)
    if result is None:
        return None
    transcript = parse_diarized(result)
    logger.info(
        "Transcribed {n} bytes: {u} utterance(s), {s} speaker(s)",
        n=len(audio), u=len(transcript.segments), s=len({u.speaker for u in transcript.segments}),
    )
    return transcript


async def transcribe(audio_url: str) -> Transcript | None:
    """Download audio from a URL and transcribe it."""
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(60.0), follow_redirects=True) as http:
            resp = await http.get(audio_url)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Audio download failed: {err}", err=str(e))
        return None
    return await transcribe_audio(resp.content)
