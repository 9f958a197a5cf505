"""Call-flow services: orchestration, persistence and external integrations.

The orchestrators (conference, transfer) and the segment store are wired
together in engine.py; the rest are module-level async functions.
"""

__all__ = [
    "buyers",
    "call_flows",
    "conference",
    "destinations",
    "engine",
    "media",
    "recordings",
    "segments",
    "speech",
    "telephony",
    "transcription",
    "transcripts",
    "transfer",
    "users",
]
