"""Pre-synthesize speech for every text prompt in a flow before it is saved."""

from __future__ import annotations

from typing import Awaitable, Callable

from loguru import logger

from flows.models import Step, iter_messages, walk

Synthesizer = Callable[[str, str], Awaitable[str | None]]


async def ensure_audio_cached(steps: list[Step], synthesize: Synthesizer) -> int:
    """Attach a generated audio URL to every tts message that lacks one.

    Mutates the steps in place and returns the number of messages updated.
    A failed synthesis leaves the message as plain text; it is rendered with
    <Say> at call time instead.
    """
    updated = 0
    for path, i, step in walk(steps):
        for message in iter_messages(step):
            if not message.needs_synthesis:
                continue
            try:
                url = await synthesize(message.text, message.voice)
            except Exception as e:
                logger.warning(
                    "Speech synthesis failed for step {id} at {path}[{i}]: {err}",
                    id=step.id, path=path, i=i, err=str(e),
                )
                continue
            if url:
                message.generated_audio_url = url
                updated += 1
    if updated:
        logger.info("Cached audio for {n} message(s)", n=updated)
    return updated
