"""Transcript model and per-segment windowing.

A chain-level recording covers every segment of a call chain, so its
transcript is split by time: each segment gets the utterances that overlap
its [started, ended) window, clipped to the window and re-based to the
segment's own start. The full transcript is kept on segment 0
(`chain_transcription`) so a chain can be re-segmented later.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime

from loguru import logger

from services.segments import Segment, SegmentStore, utcnow


@dataclass
class Utterance:
    start: float
    end: float
    text: str
    speaker: str = "Speaker 1"


@dataclass
class Transcript:
    text: str = ""
    duration: float = 0.0
    segments: list[Utterance] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "Transcript":
        """Parse stored transcript JSON. Raises ValueError on anything else."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Transcript JSON must be an object")
        return cls(
            text=data.get("text") or "",
            duration=float(data.get("duration") or 0),
            segments=[
                Utterance(
                    start=float(u["start"]),
                    end=float(u["end"]),
                    text=u.get("text", ""),
                    speaker=u.get("speaker", "Speaker 1"),
                )
                for u in data.get("segments") or []
            ],
        )


@dataclass(frozen=True)
class Window:
    """A segment's time range in seconds from chain start."""

    start: float
    end: float


def segment_windows(segments: list[Segment], now: datetime | None = None) -> list[Window]:
    """Windows for an ordered chain. Open segments run until `now`."""
    if not segments:
        return []
    now = now or utcnow()
    chain_start = segments[0].started_at or now
    windows = []
    for seg in segments:
        start = seg.started_at or chain_start
        end = seg.ended_at or now
        windows.append(Window(
            start=max(0.0, (start - chain_start).total_seconds()),
            end=(end - chain_start).total_seconds(),
        ))
    return windows


def clip_to_window(transcript: Transcript, window: Window) -> Transcript:
    """The part of a transcript inside `window`, with times relative to its start."""
    kept = [u for u in transcript.segments if u.start < window.end and u.end > window.start]
    return Transcript(
        text=" ".join(u.text for u in kept),
        duration=max(0.0, window.end - window.start),
        segments=[
            Utterance(
                start=max(u.start, window.start) - window.start,
                end=min(u.end, window.end) - window.start,
                text=u.text,
                speaker=u.speaker,
            )
            for u in kept
        ],
    )


def split_transcript(transcript: Transcript, windows: list[Window]) -> list[Transcript]:
    return [clip_to_window(transcript, w) for w in windows]


async def apply_to_chain(
    store: SegmentStore,
    call_sid: str,
    raw_transcript: str,
    status: str = "completed",
    now: datetime | None = None,
) -> int:
    """Store a chain-level transcript across the chain's segments.

    A single-segment chain, or a transcript without timed utterances, is
    stored verbatim. Returns the number of segments updated.
    """
    chain = await store.get_call_chain(call_sid)
    if not chain:
        logger.warning("[{cs}] No segments to attach transcript to", cs=call_sid)
        return 0

    await store.update_call(chain[0].id, chain_transcription=raw_transcript)

    if len(chain) == 1:
        await store.update_call(chain[0].id, transcription=raw_transcript, transcription_status=status)
        return 1

    try:
        transcript = Transcript.from_json(raw_transcript)
    except (ValueError, KeyError, TypeError):
        logger.warning("[{cs}] Transcript is not timed JSON, storing on every segment", cs=call_sid)
        transcript = None

    if transcript is None or not transcript.segments:
        for seg in chain:
            await store.update_call(seg.id, transcription=raw_transcript, transcription_status=status)
        return len(chain)

    windows = segment_windows(chain, now)
    for seg, window, part in zip(chain, windows, split_transcript(transcript, windows)):
        logger.debug(
            "[{cs}] Segment {n}: {s:.1f}s-{e:.1f}s, {k} utterance(s)",
            cs=call_sid, n=seg.segment_number, s=window.start, e=window.end, k=len(part.segments),
        )
        await store.update_call(seg.id, transcription=part.to_json(), transcription_status=status)

    logger.info("[{cs}] Transcript split across {n} segments", cs=call_sid, n=len(chain))
    return len(chain)


async def resegment_chain(store: SegmentStore, call_sid: str) -> int:
    """Re-apply the stored chain transcript. Returns segments updated (0 if none stored)."""
    chain = await store.get_call_chain(call_sid)
    if not chain:
        return 0

    source = chain[0].chain_transcription
    if not source:
        completed = [s for s in chain if s.status == "completed" and s.transcription]
        source = completed[0].transcription if completed else None
    if not source:
        logger.warning("[{cs}] No transcript to re-segment", cs=call_sid)
        return 0
    return await apply_to_chain(store, call_sid, source)


async def resegment_tenant(store: SegmentStore, tenant_id: str) -> dict:
    """Re-segment every multi-segment chain of a tenant."""
    processed = 0
    errors = 0
    for sid in await store.list_chain_sids(tenant_id):
        chain = await store.get_call_chain(sid)
        if len(chain) < 2:
            continue
        try:
            if await resegment_chain(store, sid):
                processed += 1
        except Exception as e:
            logger.error("[{cs}] Re-segment failed: {err}", cs=sid, err=str(e))
            errors += 1
    logger.info("Re-segmented tenant {t}: {p} processed, {e} errors", t=tenant_id, p=processed, e=errors)
    return {"processed": processed, "errors": errors}
