"""TwiML building blocks and webhook URL construction.

Every URL the provider calls back on is built here so route paths and
query parameters stay in one place.
"""

from __future__ import annotations

from urllib.parse import quote, urlencode

from twilio.twiml.voice_response import Dial, Gather, VoiceResponse

from flows.models import MessageConfig

SAY_VOICE = "alice"

DEFAULT_MESSAGE = "Thank you for calling. We are currently unavailable. Please try again later."
GOODBYE_MESSAGE = "Goodbye."
NOT_AVAILABLE_MESSAGE = "The person you are trying to reach is not available."
VOICEMAIL_GREETING = "Please leave a message after the beep."
VOICEMAIL_THANKS = "Thank you for your message. Goodbye."
TRANSFER_HOLD_MESSAGE = "Please hold while we connect you."
RING_WELCOME = "Please wait while we connect your call."
RING_HOLD = "Please continue to hold."
RING_ROUNDS = 5

CONFERENCE_EVENTS = "start end join leave"
AGENT_STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]


def conference_name(original_call_sid: str, segment_number: int) -> str:
    return f"call_{original_call_sid}_seg_{segment_number}"


def transfer_call_sid(original_call_sid: str, segment_number: int) -> str:
    return f"{original_call_sid}_transfer_{segment_number}"


def original_call_sid(call_sid: str) -> str:
    """Strip a transfer suffix: 'CA1_transfer_2' → 'CA1'."""
    return call_sid.split("_transfer")[0]


class CallbackUrls:
    """Builds absolute webhook URLs for one deployment."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def _url(self, path: str, **params) -> str:
        query = {k: v for k, v in params.items() if v is not None and v != ""}
        url = f"{self.base_url}{path}"
        return f"{url}?{urlencode(query)}" if query else url

    def incoming(self, tenant_id: str, line_id: str) -> str:
        return self._url(f"/voice/incoming/{tenant_id}/{line_id}")

    def incoming_status(self, tenant_id: str, line_id: str) -> str:
        return self._url(f"/voice/incoming/{tenant_id}/{line_id}/status")

    def flow(
        self,
        tenant_id: str,
        line_id: str,
        step: int,
        action: str | None = None,
        branch: str | None = None,
        attempt: int | None = None,
        var: str | None = None,
        seq: int | None = None,
    ) -> str:
        return self._url(
            f"/voice/flow/{tenant_id}/{line_id}",
            step=step, action=action, branch=branch, attempt=attempt, var=var, seq=seq,
        )

    def dial_status(
        self,
        tenant_id: str,
        line_id: str,
        step: int,
        branch: str | None = None,
        seq: int | None = None,
    ) -> str:
        return self._url(
            f"/voice/flow/{tenant_id}/{line_id}/dial-status", step=step, branch=branch, seq=seq
        )

    def conference(self, tenant_id: str, call_sid: str, segment: int, seq: int | None = None) -> str:
        return self._url(f"/voice/conference/{tenant_id}/{call_sid}/{segment}", seq=seq)

    def agent_status(
        self,
        tenant_id: str,
        call_sid: str,
        segment: int,
        line_id: str | None = None,
        step: int | None = None,
        attempt: int | None = None,
        seq: int | None = None,
    ) -> str:
        return self._url(
            f"/voice/agent-status/{tenant_id}/{call_sid}/{segment}",
            line=line_id, step=step, attempt=attempt, seq=seq,
        )

    def recording(self, tenant_id: str, call_sid: str, segment: int | None = None) -> str:
        path = f"/voice/recording/{tenant_id}/{call_sid}"
        if segment is not None:
            path += f"/{segment}"
        return self._url(path)

    def voicemail(self, tenant_id: str, call_sid: str) -> str:
        return self._url(f"/voice/voicemail/{tenant_id}/{call_sid}")

    def transcription(self, tenant_id: str, call_sid: str) -> str:
        return self._url(f"/voice/transcription/{tenant_id}/{call_sid}")

    def ring(self) -> str:
        return self._url("/voice/ring")

    def outgoing_status(self, tenant_id: str) -> str:
        return self._url("/voice/outgoing/status", tenantId=tenant_id)

    def client_address(self, identity: str, **params) -> str:
        """'client:<identity>' with optional custom parameters for the browser SDK."""
        address = f"client:{identity}"
        if params:
            address += "?" + urlencode(params, quote_via=quote)
        return address


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_message(target: VoiceResponse | Gather, message: MessageConfig | None) -> None:
    """Append play-or-say for a message. Empty messages render nothing."""
    if message is None:
        return
    if message.type == "recording" and message.recording_url:
        target.play(message.recording_url)
    elif message.generated_audio_url:
        target.play(message.generated_audio_url)
    elif message.text:
        target.say(message.text, voice=SAY_VOICE, language=message.language)


def say(target: VoiceResponse | Gather, text: str) -> None:
    target.say(text, voice=SAY_VOICE)


def default_twiml() -> str:
    response = VoiceResponse()
    say(response, DEFAULT_MESSAGE)
    response.hangup()
    return str(response)


def goodbye(response: VoiceResponse) -> None:
    say(response, GOODBYE_MESSAGE)
    response.hangup()


def hangup_twiml() -> str:
    response = VoiceResponse()
    response.hangup()
    return str(response)


def empty_twiml() -> str:
    return str(VoiceResponse())


def redirect_twiml(url: str) -> str:
    response = VoiceResponse()
    response.redirect(url, method="POST")
    return str(response)


def ring_twiml() -> str:
    """Hold audio played to a caller waiting alone in a conference."""
    response = VoiceResponse()
    say(response, RING_WELCOME)
    for _ in range(RING_ROUNDS):
        response.pause(length=10)
        say(response, RING_HOLD)
    response.pause(length=30)
    return str(response)


def add_conference(
    response: VoiceResponse,
    name: str,
    *,
    status_callback: str,
    wait_url: str,
    action: str | None = None,
    record: bool = False,
    recording_callback: str | None = None,
    end_on_exit: bool = True,
) -> None:
    """Bridge the current call into a named conference.

    The conference starts when the first participant enters and, for the
    caller side (end_on_exit=True), ends when that participant leaves.
    """
    dial = Dial(action=action, method="POST") if action else Dial()
    dial.conference(
        name,
        start_conference_on_enter=True,
        end_conference_on_exit=end_on_exit,
        beep=False,
        wait_url=wait_url,
        wait_method="GET",
        status_callback=status_callback,
        status_callback_event=CONFERENCE_EVENTS,
        status_callback_method="POST",
        record="record-from-start" if record else None,
        recording_status_callback=recording_callback if record else None,
        recording_status_callback_method="POST" if record else None,
        recording_status_callback_event="completed" if record else None,
    )
    response.append(dial)


def agent_join_twiml(name: str, status_callback: str | None = None) -> str:
    """TwiML run by an answered agent leg: join the caller's conference."""
    response = VoiceResponse()
    dial = Dial()
    dial.conference(
        name,
        start_conference_on_enter=True,
        end_conference_on_exit=False,
        beep=False,
        status_callback=status_callback,
        status_callback_event=CONFERENCE_EVENTS if status_callback else None,
        status_callback_method="POST" if status_callback else None,
    )
    response.append(dial)
    return str(response)
