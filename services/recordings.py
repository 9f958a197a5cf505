"""Recording pipeline: download, store, attach, transcribe.

Conference recordings arrive per segment and are transcribed onto that
segment verbatim. Chain-level recordings (voicemail, outbound browser
calls) cover the whole chain; they are attached to every segment and their
transcript is windowed across the chain.
"""

from __future__ import annotations

from loguru import logger

from services.media import store_media
from services.segments import Segment, SegmentStore
from services.telephony import TelephonyClient, TelephonyError
from services.transcripts import apply_to_chain


class RecordingService:
    def __init__(self, store: SegmentStore, telephony: TelephonyClient, transcriber=None):
        if transcriber is None:
            from services.transcription import transcribe_audio as transcriber
        self.store = store
        self.telephony = telephony
        self.transcriber = transcriber

    async def _download(self, tenant_id: str, name: str, recording_url: str) -> tuple[str | None, bytes | None]:
        try:
            audio = await self.telephony.fetch_recording(recording_url)
        except TelephonyError as e:
            logger.error("Recording download failed for {name}: {err}", name=name, err=str(e))
            return None, None
        url = await store_media(audio, f"recordings/{tenant_id}", "mp3", name=name)
        return url, audio

    async def process_segment_recording(
        self,
        call_sid: str,
        segment_number: int,
        recording_sid: str,
        recording_url: str,
        duration: int | None,
    ) -> tuple[Segment | None, bytes | None]:
        """Attach a conference recording to its segment. Returns (segment, audio)."""
        seg = await self.store.get_segment(call_sid, segment_number)
        if seg is None:
            logger.warning("[{cs}] No segment {n} for recording", cs=call_sid, n=segment_number)
            return None, None

        url, audio = await self._download(seg.tenant_id, f"{seg.original_call_sid}_seg{segment_number}", recording_url)
        if url is None:
            updated = await self.store.update_call(seg.id, recording_sid=recording_sid, recording_duration=duration)
            return updated, None

        updated = await self.store.update_call(
            seg.id,
            recording_sid=recording_sid,
            recording_url=url,
            recording_duration=duration,
            transcription_status="pending",
        )
        logger.info("[{cs}] Segment {n} recording stored", cs=call_sid, n=segment_number)
        return updated, audio

    async def process_chain_recording(
        self,
        call_sid: str,
        recording_sid: str,
        recording_url: str,
        duration: int | None,
    ) -> tuple[list[Segment], bytes | None]:
        """Attach a chain-level recording to every segment. Returns (segments, audio)."""
        chain = await self.store.get_call_chain(call_sid)
        if not chain:
            logger.warning("[{cs}] No call chain for recording", cs=call_sid)
            return [], None

        url, audio = await self._download(chain[0].tenant_id, f"{chain[0].original_call_sid}_{recording_sid}", recording_url)
        updated = []
        for seg in chain:
            data = dict(recording_sid=recording_sid, recording_duration=duration)
            if url:
                data["recording_url"] = url
                if not seg.transcription:
                    data["transcription_status"] = "pending"
            updated.append(await self.store.update_call(seg.id, **data) or seg)
        logger.info("[{cs}] Recording attached to {n} segment(s)", cs=call_sid, n=len(updated))
        return updated, audio

    async def transcribe_segment(self, segment: Segment, audio: bytes) -> None:
        """Background job: transcribe one segment's recording onto it."""
        await self.store.update_call(segment.id, transcription_status="processing")
        try:
            transcript = await self.transcriber(audio)
        except Exception as e:
            logger.error("[{cs}] Transcription error: {err}", cs=segment.call_sid, err=str(e))
            transcript = None
        if transcript is None:
            await self.store.update_call(segment.id, transcription_status="failed")
            return
        await self.store.update_call(
            segment.id, transcription=transcript.to_json(), transcription_status="completed"
        )
        logger.info("[{cs}] Segment transcription stored", cs=segment.call_sid)

    async def transcribe_chain(self, call_sid: str, audio: bytes) -> None:
        """Background job: transcribe a chain-level recording and window it."""
        chain = await self.store.get_call_chain(call_sid)
        for seg in chain:
            await self.store.update_call(seg.id, transcription_status="processing")
        try:
            transcript = await self.transcriber(audio)
        except Exception as e:
            logger.error("[{cs}] Transcription error: {err}", cs=call_sid, err=str(e))
            transcript = None
        if transcript is None:
            for seg in chain:
                await self.store.update_call(seg.id, transcription_status="failed")
            return
        await apply_to_chain(self.store, call_sid, transcript.to_json(), "completed")

    async def store_provider_transcription(self, call_sid: str, text: str | None, status: str) -> Segment | None:
        """Voicemail transcription text from the provider, stored on the active segment."""
        seg = await self.store.get_latest_segment(call_sid)
        if seg is None:
            return None
        return await self.store.update_call(
            seg.id,
            transcription=text or None,
            transcription_status="completed" if status == "completed" else "failed",
        )
