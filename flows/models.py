"""Call-flow definition model.

A flow is an ordered list of steps. Some step types own nested step lists
(menu options, menu invalid-input steps, schedule branches, schedule
fallback), so a flow is a tree. Flows travel as camelCase JSON and are
stored as JSONB.

Nested lists are addressed by a branch path, a dot-separated list of
(index, selector) pairs walked from the root:

    "2.o1"       root[2].options[1].steps
    "2.i"        root[2].invalidInputSteps
    "4.b0.1.f"   root[4].branches[0].steps[1].fallbackSteps
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    ValidationInfo,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    GREETING = "greeting"
    DIAL = "dial"
    SIMULCALL = "simulcall"
    ROUND_ROBIN = "round_robin"
    MENU = "menu"
    SCHEDULE = "schedule"
    KEYPAD_ENTRY = "keypad_entry"
    TAG = "tag"
    VOICEMAIL = "voicemail"
    HANGUP = "hangup"


TERMINAL_STEP_TYPES = frozenset({StepType.VOICEMAIL.value, StepType.HANGUP.value})
DIAL_STEP_TYPES = frozenset({StepType.DIAL.value, StepType.SIMULCALL.value, StepType.ROUND_ROBIN.value})

TTS_VOICES = (
    "alloy", "ash", "ballad", "cedar", "coral", "echo",
    "fable", "marin", "nova", "onyx", "sage", "shimmer",
)
DEFAULT_VOICE = "echo"

TtsVoice = Literal[
    "alloy", "ash", "ballad", "cedar", "coral", "echo",
    "fable", "marin", "nova", "onyx", "sage", "shimmer",
]
Language = Literal["en-US", "en-GB", "es-ES", "es-MX", "fr-FR"]
DayPreset = Literal["weekdays", "weekends", "everyday"]


class _FlowModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MessageConfig(_FlowModel):
    """A prompt: synthesized speech from text, or a pre-recorded audio URL."""

    type: Literal["tts", "recording"] = "tts"
    text: str | None = None
    recording_url: str | None = None
    voice: TtsVoice = DEFAULT_VOICE
    language: Language = "en-US"
    generated_audio_url: str | None = None

    @property
    def needs_synthesis(self) -> bool:
        return self.type == "tts" and bool(self.text) and not self.generated_audio_url


class GreetingConfig(_FlowModel):
    message: MessageConfig


class DialConfig(_FlowModel):
    destination: str = Field(min_length=1)
    timeout: int = Field(default=30, ge=5, le=120)
    caller_id: str | None = None
    record: bool = False


class SimulcallConfig(_FlowModel):
    destinations: list[str] = Field(min_length=2)
    timeout: int = Field(default=30, ge=5, le=120)
    caller_id: str | None = None


class RoundRobinConfig(_FlowModel):
    destinations: list[str] = Field(min_length=2)
    timeout_per_destination: int = Field(default=20, ge=5, le=60)
    caller_id: str | None = None


class MenuOption(_FlowModel):
    digit: str = Field(pattern=r"^[0-9*#]$")
    label: str | None = None
    steps: list[Step] = Field(default_factory=list)


class MenuConfig(_FlowModel):
    message: MessageConfig
    options: list[MenuOption] = Field(min_length=1)
    num_digits: int = Field(default=1, ge=1, le=10)
    timeout: int = Field(default=5, ge=1, le=30)
    retries: int = Field(default=2, ge=0, le=5)
    invalid_input_steps: list[Step] = Field(default_factory=list)


class TimeSlot(_FlowModel):
    days: Union[DayPreset, list[int]]
    start_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    all_day: bool = False

    @field_validator("days")
    @classmethod
    def check_days(cls, v):
        if isinstance(v, list) and any(d < 0 or d > 6 for d in v):
            raise ValueError("days must be between 0 (Sunday) and 6 (Saturday)")
        return v


class ScheduleBranch(_FlowModel):
    id: str
    name: str
    time_slots: list[TimeSlot] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)


class ScheduleConfig(_FlowModel):
    timezone: str = "America/Chicago"
    branches: list[ScheduleBranch] = Field(default_factory=list)
    fallback_steps: list[Step] = Field(default_factory=list)


class KeypadEntryConfig(_FlowModel):
    message: MessageConfig
    variable_name: str = "keypad_input"
    max_digits: int = Field(default=10, ge=1, le=20)
    min_digits: int = Field(default=1, ge=1, le=20)
    finish_on_key: bool = True
    timeout: int = Field(default=5, ge=1, le=30)


class TagConfig(_FlowModel):
    tag_name: str = Field(min_length=1)
    tag_value: str | None = None


class VoicemailConfig(_FlowModel):
    greeting: MessageConfig | None = None
    max_length: int = Field(default=20, ge=5, le=120)
    transcribe: bool = True
    notification_email: str | None = None


class HangupConfig(_FlowModel):
    message: MessageConfig | None = None


CONFIG_MODELS: dict[str, type[_FlowModel]] = {
    StepType.GREETING.value: GreetingConfig,
    StepType.DIAL.value: DialConfig,
    StepType.SIMULCALL.value: SimulcallConfig,
    StepType.ROUND_ROBIN.value: RoundRobinConfig,
    StepType.MENU.value: MenuConfig,
    StepType.SCHEDULE.value: ScheduleConfig,
    StepType.KEYPAD_ENTRY.value: KeypadEntryConfig,
    StepType.TAG.value: TagConfig,
    StepType.VOICEMAIL.value: VoicemailConfig,
    StepType.HANGUP.value: HangupConfig,
}


class Step(_FlowModel):
    """One node of a flow.

    `config` is parsed into the typed model for known step types. Unknown
    types keep their raw dict so stored flows from newer clients still load.
    """

    id: str = Field(min_length=1)
    type: str
    label: str | None = None
    config: Any = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def parse_config(cls, v, info: ValidationInfo):
        model = CONFIG_MODELS.get(info.data.get("type", ""))
        if model is None or isinstance(v, model):
            return v
        return model.model_validate(v or {})

    @field_serializer("config")
    def dump_config(self, v, info: SerializationInfo):
        if isinstance(v, BaseModel):
            return v.model_dump(by_alias=bool(info.by_alias), exclude_none=info.exclude_none, mode=info.mode)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_STEP_TYPES

    @property
    def is_known(self) -> bool:
        return self.type in CONFIG_MODELS


MenuOption.model_rebuild()
MenuConfig.model_rebuild()
ScheduleBranch.model_rebuild()
ScheduleConfig.model_rebuild()


def parse_steps(raw: list | None) -> list[Step]:
    """Parse a JSON step list (as stored or posted) into Step models."""
    return [s if isinstance(s, Step) else Step.model_validate(s) for s in (raw or [])]


def dump_steps(steps: list[Step]) -> list[dict]:
    return [s.to_json() for s in steps]


# ---------------------------------------------------------------------------
# Tree traversal
# ---------------------------------------------------------------------------

def child_lists(step: Step) -> list[tuple[str, str, list[Step]]]:
    """Return (selector, display name, steps) for every nested list of a step."""
    cfg = step.config
    if isinstance(cfg, MenuConfig):
        lists = [(f"o{i}", f"option[{opt.digit}]", opt.steps) for i, opt in enumerate(cfg.options)]
        lists.append(("i", "invalidInput", cfg.invalid_input_steps))
        return lists
    if isinstance(cfg, ScheduleConfig):
        lists = [(f"b{i}", f"branch[{b.name}]", b.steps) for i, b in enumerate(cfg.branches)]
        lists.append(("f", "fallback", cfg.fallback_steps))
        return lists
    return []


def walk(steps: list[Step], path: str = "root") -> Iterator[tuple[str, int, Step]]:
    """Yield (path, index, step) for every step in the tree, depth first."""
    for i, step in enumerate(steps):
        yield path, i, step
        for _, name, nested in child_lists(step):
            yield from walk(nested, f"{path}[{i}].{name}")


def iter_messages(step: Step) -> Iterator[MessageConfig]:
    """Yield the MessageConfig objects owned directly by a step (not its children)."""
    cfg = step.config
    for attr in ("message", "greeting"):
        msg = getattr(cfg, attr, None)
        if isinstance(msg, MessageConfig):
            yield msg


def branch_path(parent: str, index: int, selector: str) -> str:
    """Address of a nested list under step `index` of the list at `parent`."""
    prefix = f"{parent}." if parent else ""
    return f"{prefix}{index}.{selector}"


def resolve_branch(steps: list[Step], branch: str | None) -> list[Step]:
    """Return the step list addressed by a branch path.

    Raises LookupError when the path no longer matches the flow, which
    happens when a flow is edited while a call is in progress.
    """
    if not branch:
        return steps
    parts = branch.split(".")
    if len(parts) % 2:
        raise LookupError(f"Malformed branch path: {branch}")

    current = steps
    for idx_part, selector in zip(parts[::2], parts[1::2]):
        try:
            step = current[int(idx_part)]
        except (ValueError, IndexError):
            raise LookupError(f"Branch path {branch} does not match flow") from None
        for sel, _, nested in child_lists(step):
            if sel == selector:
                current = nested
                break
        else:
            raise LookupError(f"Branch path {branch} does not match flow")
    return current
