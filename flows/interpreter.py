"""Step interpreter: compiles flow steps into TwiML, one webhook at a time.

Nothing runs between webhooks. Each request names a position in the flow
(step index plus branch path) and the interpreter renders TwiML from there.
Two execution modes share one implementation:

- REDIRECT: top-level continuation. After a greeting (or an unknown step)
  the response redirects to the next step's webhook.
- INLINE: nested branches (menu options, schedule branches) render their
  steps into the same response until a step needs a round-trip.

Tag steps always continue inline. Dial-type steps hand off to the
conference orchestrator and stop; the flow resumes from an agent-status,
conference or dial-status callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger
from twilio.twiml.voice_response import Gather, VoiceResponse

from flows.models import (
    DialConfig,
    GreetingConfig,
    HangupConfig,
    KeypadEntryConfig,
    MenuConfig,
    RoundRobinConfig,
    ScheduleConfig,
    SimulcallConfig,
    Step,
    StepType,
    TagConfig,
    VoicemailConfig,
    branch_path,
    resolve_branch,
)
from flows.schedule import match_branch
from flows.twiml import (
    NOT_AVAILABLE_MESSAGE,
    VOICEMAIL_GREETING,
    CallbackUrls,
    add_conference,
    conference_name,
    goodbye,
    render_message,
    say,
)
from services.conference import ConferenceOrchestrator
from services.destinations import DestinationResolver, DestinationUnresolvable, DialTarget
from services.segments import ResumeToken, Segment, SegmentStore


class ExecutionMode(str, Enum):
    REDIRECT = "redirect"
    INLINE = "inline"


class Next(Enum):
    STOP = "stop"        # response is complete
    ADVANCE = "advance"  # go to index+1 (redirect or inline, per mode)
    CHAIN = "chain"      # go to index+1 inline regardless of mode


@dataclass
class CallContext:
    """Identifiers for one webhook request plus a request-scoped variable/tag bag."""

    tenant_id: str
    line_id: str
    call_sid: str
    flow_id: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    segment_number: int = 0
    record_calls: bool = False
    variables: dict[str, str] = field(default_factory=dict)
    tags: list[dict] = field(default_factory=list)


Handler = Callable[..., Awaitable[Next]]


class StepInterpreter:
    def __init__(
        self,
        urls: CallbackUrls,
        conference: ConferenceOrchestrator,
        resolver: DestinationResolver,
        store: SegmentStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self.urls = urls
        self.conference = conference
        self.resolver = resolver
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[str, Handler] = {
            StepType.GREETING.value: self._greeting,
            StepType.DIAL.value: self._dial,
            StepType.SIMULCALL.value: self._simulcall,
            StepType.ROUND_ROBIN.value: self._round_robin,
            StepType.MENU.value: self._menu,
            StepType.SCHEDULE.value: self._schedule,
            StepType.KEYPAD_ENTRY.value: self._keypad_entry,
            StepType.TAG.value: self._tag,
            StepType.VOICEMAIL.value: self._voicemail,
            StepType.HANGUP.value: self._hangup,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        steps: list[Step],
        index: int,
        ctx: CallContext,
        params: dict | None = None,
        mode: ExecutionMode = ExecutionMode.REDIRECT,
        branch: str | None = None,
    ) -> str:
        """Render TwiML for the flow starting at `index` of the list at `branch`.

        `steps` is always the root step list; `branch` selects a nested list.
        """
        response = VoiceResponse()
        try:
            current = resolve_branch(steps, branch)
        except LookupError as e:
            logger.warning("[{cs}] {err}, hanging up", cs=ctx.call_sid, err=str(e))
            response.hangup()
            return str(response)
        await self._run(response, steps, current, index, ctx, params or {}, mode, branch)
        return str(response)

    async def handle_action(
        self,
        steps: list[Step],
        index: int,
        ctx: CallContext,
        action: str | None,
        params: dict,
        branch: str | None = None,
        attempt: int = 0,
        var: str | None = None,
    ) -> str:
        """Continue a flow from a webhook carrying an action discriminator."""
        response = VoiceResponse()
        try:
            current = resolve_branch(steps, branch)
        except LookupError as e:
            logger.warning("[{cs}] {err}, hanging up", cs=ctx.call_sid, err=str(e))
            response.hangup()
            return str(response)

        digits = params.get("Digits") or None
        if action == "menu":
            await self._menu_selection(response, steps, current, index, ctx, digits, branch)
        elif action == "menu_invalid":
            await self._menu_selection(response, steps, current, index, ctx, None, branch)
        elif action == "menu_retry":
            logger.info("[{cs}] No menu input, replay {n}", cs=ctx.call_sid, n=attempt)
            await self._run(
                response, steps, current, index, ctx, {"attempt": attempt}, ExecutionMode.REDIRECT, branch
            )
        elif action == "keypad":
            await self._keypad_result(response, steps, current, index, ctx, digits, var, branch)
        elif action == "round_robin_redirect":
            await self._run(
                response, steps, current, index, ctx, {**params, "attempt": attempt},
                ExecutionMode.REDIRECT, branch,
            )
        else:
            await self._run(response, steps, current, index, ctx, params, ExecutionMode.REDIRECT, branch)
        return str(response)

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        response: VoiceResponse,
        root: list[Step],
        steps: list[Step],
        index: int,
        ctx: CallContext,
        params: dict,
        mode: ExecutionMode,
        branch: str | None,
    ) -> None:
        while True:
            if not 0 <= index < len(steps):
                goodbye(response)
                return

            step = steps[index]
            handler = self._handlers.get(step.type)
            if handler is None:
                logger.warning(
                    "[{cs}] Unknown step type {type} ({id}), skipping",
                    cs=ctx.call_sid, type=step.type, id=step.id,
                )
                outcome = Next.ADVANCE
            else:
                logger.debug(
                    "[{cs}] Step {i} {type} ({id}) branch={b} mode={m}",
                    cs=ctx.call_sid, i=index, type=step.type, id=step.id, b=branch, m=mode.value,
                )
                try:
                    outcome = await handler(
                        response=response, root=root, steps=steps, index=index, step=step,
                        ctx=ctx, params=params, mode=mode, branch=branch,
                    )
                except Exception as e:
                    logger.error(
                        "[{cs}] Step {id} failed: {err}, advancing",
                        cs=ctx.call_sid, id=step.id, err=str(e),
                    )
                    outcome = Next.ADVANCE

            if outcome is Next.STOP:
                return
            # attempt only applies to the step it was issued for
            params = {k: v for k, v in params.items() if k != "attempt"}
            if outcome is Next.ADVANCE and mode is ExecutionMode.REDIRECT:
                response.redirect(self.urls.flow(ctx.tenant_id, ctx.line_id, index + 1, branch=branch), method="POST")
                return
            index += 1

    async def _run_nested(
        self,
        response: VoiceResponse,
        root: list[Step],
        parent_steps: list[Step],
        parent_index: int,
        parent_branch: str | None,
        selector: str,
        nested: list[Step],
        ctx: CallContext,
    ) -> None:
        """Run a nested list inline from position 0. An exhausted list hangs up."""
        path = branch_path(parent_branch, parent_index, selector)
        await self._run(response, root, nested, 0, ctx, {}, ExecutionMode.INLINE, path)

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _greeting(self, *, response, step, **_) -> Next:
        cfg: GreetingConfig = step.config
        render_message(response, cfg.message)
        return Next.ADVANCE

    async def _dial(self, *, response, index, step, ctx, branch, **_) -> Next:
        cfg: DialConfig = step.config
        try:
            target = await self.resolver.resolve(cfg.destination, ctx.tenant_id)
        except DestinationUnresolvable as e:
            logger.warning("[{cs}] Dial step {id}: {err}", cs=ctx.call_sid, id=step.id, err=str(e))
            say(response, NOT_AVAILABLE_MESSAGE)
            return Next.ADVANCE

        return await self._bridge(
            response, ctx, step, index, branch,
            targets=[target],
            attempt=0,
            destination_count=1,
            timeout=cfg.timeout,
            caller_id=cfg.caller_id,
            record=cfg.record or ctx.record_calls,
        )

    async def _simulcall(self, *, response, index, step, ctx, branch, **_) -> Next:
        cfg: SimulcallConfig = step.config
        targets = await self.resolver.resolve_many(cfg.destinations, ctx.tenant_id)
        if not targets:
            say(response, NOT_AVAILABLE_MESSAGE)
            return Next.ADVANCE

        return await self._bridge(
            response, ctx, step, index, branch,
            targets=targets,
            attempt=0,
            destination_count=len(cfg.destinations),
            timeout=cfg.timeout,
            caller_id=cfg.caller_id,
            record=ctx.record_calls,
        )

    async def _round_robin(self, *, response, index, step, ctx, params, branch, **_) -> Next:
        cfg: RoundRobinConfig = step.config
        attempt = int(params.get("attempt") or 0)

        while attempt < len(cfg.destinations):
            try:
                target = await self.resolver.resolve(cfg.destinations[attempt], ctx.tenant_id)
            except DestinationUnresolvable as e:
                logger.warning(
                    "[{cs}] Round robin {id} attempt {a}: {err}",
                    cs=ctx.call_sid, id=step.id, a=attempt, err=str(e),
                )
                attempt += 1
                continue
            return await self._bridge(
                response, ctx, step, index, branch,
                targets=[target],
                attempt=attempt,
                destination_count=len(cfg.destinations),
                timeout=cfg.timeout_per_destination,
                caller_id=cfg.caller_id,
                record=ctx.record_calls,
            )

        say(response, NOT_AVAILABLE_MESSAGE)
        return Next.ADVANCE

    async def _bridge(
        self,
        response: VoiceResponse,
        ctx: CallContext,
        step: Step,
        index: int,
        branch: str | None,
        *,
        targets: list[DialTarget],
        attempt: int,
        destination_count: int,
        timeout: int,
        caller_id: str | None,
        record: bool,
    ) -> Next:
        resume = ResumeToken(
            flow_id=ctx.flow_id,
            line_id=ctx.line_id,
            step_index=index,
            branch=branch,
            attempt_index=attempt,
            step_type=step.type,
            destination_count=destination_count,
        )
        seg: Segment | None = await self.conference.prepare_attempt(
            ctx.call_sid,
            ctx.segment_number,
            resume,
            targets,
            caller_id or ctx.to_number,
            timeout,
            record,
        )
        if seg is None:
            say(response, NOT_AVAILABLE_MESSAGE)
            return Next.ADVANCE

        seq = seg.scratch.attempt_seq
        if step.type == StepType.ROUND_ROBIN.value:
            action = self.urls.flow(
                ctx.tenant_id, ctx.line_id, index,
                action="round_robin", branch=branch, attempt=attempt, seq=seq,
            )
        else:
            action = self.urls.dial_status(ctx.tenant_id, ctx.line_id, index, branch=branch, seq=seq)

        add_conference(
            response,
            seg.conference_name or conference_name(ctx.call_sid, ctx.segment_number),
            status_callback=self.urls.conference(ctx.tenant_id, ctx.call_sid, ctx.segment_number, seq),
            wait_url=self.urls.ring(),
            action=action,
            record=record,
            recording_callback=self.urls.recording(ctx.tenant_id, ctx.call_sid, ctx.segment_number),
        )
        return Next.STOP

    async def _menu(self, *, response, index, step, ctx, params, branch, **_) -> Next:
        cfg: MenuConfig = step.config
        replays = int(params.get("attempt") or 0)
        gather = Gather(
            num_digits=cfg.num_digits,
            timeout=cfg.timeout,
            action=self.urls.flow(ctx.tenant_id, ctx.line_id, index, action="menu", branch=branch),
            method="POST",
        )
        render_message(gather, cfg.message)
        response.append(gather)
        # reached only when no digits were entered
        if replays < cfg.retries:
            no_input = self.urls.flow(
                ctx.tenant_id, ctx.line_id, index, action="menu_retry", branch=branch, attempt=replays + 1
            )
        else:
            no_input = self.urls.flow(ctx.tenant_id, ctx.line_id, index, action="menu_invalid", branch=branch)
        response.redirect(no_input, method="POST")
        return Next.STOP

    async def _menu_selection(
        self,
        response: VoiceResponse,
        root: list[Step],
        steps: list[Step],
        index: int,
        ctx: CallContext,
        digits: str | None,
        branch: str | None,
    ) -> None:
        step = steps[index] if 0 <= index < len(steps) else None
        if step is None or not isinstance(step.config, MenuConfig):
            logger.warning("[{cs}] Menu callback for non-menu step {i}", cs=ctx.call_sid, i=index)
            response.hangup()
            return

        cfg: MenuConfig = step.config
        for i, option in enumerate(cfg.options):
            if digits is not None and option.digit == digits:
                logger.info("[{cs}] Menu {id}: selected {d}", cs=ctx.call_sid, id=step.id, d=digits)
                if option.steps:
                    await self._run_nested(response, root, steps, index, branch, f"o{i}", option.steps, ctx)
                else:
                    await self._run(response, root, steps, index + 1, ctx, {}, ExecutionMode.REDIRECT, branch)
                return

        logger.info("[{cs}] Menu {id}: invalid or no input ({d})", cs=ctx.call_sid, id=step.id, d=digits)
        if cfg.invalid_input_steps:
            await self._run_nested(response, root, steps, index, branch, "i", cfg.invalid_input_steps, ctx)
        else:
            response.hangup()

    async def _schedule(self, *, response, root, steps, index, step, ctx, branch, **_) -> Next:
        cfg: ScheduleConfig = step.config
        matched = match_branch(cfg, self.clock())
        if matched is not None:
            selector = f"b{cfg.branches.index(matched)}"
            nested = matched.steps
            logger.info("[{cs}] Schedule {id}: branch {name}", cs=ctx.call_sid, id=step.id, name=matched.name)
        else:
            selector = "f"
            nested = cfg.fallback_steps
            logger.info("[{cs}] Schedule {id}: fallback", cs=ctx.call_sid, id=step.id)

        if not nested:
            return Next.ADVANCE
        await self._run_nested(response, root, steps, index, branch, selector, nested, ctx)
        return Next.STOP

    async def _keypad_entry(self, *, response, index, step, ctx, branch, **_) -> Next:
        cfg: KeypadEntryConfig = step.config
        gather = Gather(
            num_digits=cfg.max_digits,
            timeout=cfg.timeout,
            finish_on_key="#" if cfg.finish_on_key else "",
            action=self.urls.flow(
                ctx.tenant_id, ctx.line_id, index, action="keypad", branch=branch, var=cfg.variable_name,
            ),
            method="POST",
        )
        render_message(gather, cfg.message)
        response.append(gather)
        response.redirect(self.urls.flow(ctx.tenant_id, ctx.line_id, index + 1, branch=branch), method="POST")
        return Next.STOP

    async def _keypad_result(
        self,
        response: VoiceResponse,
        root: list[Step],
        steps: list[Step],
        index: int,
        ctx: CallContext,
        digits: str | None,
        var: str | None,
        branch: str | None,
    ) -> None:
        step = steps[index] if 0 <= index < len(steps) else None
        cfg = step.config if step is not None and isinstance(step.config, KeypadEntryConfig) else None
        name = var or (cfg.variable_name if cfg else "keypad_input")
        min_digits = cfg.min_digits if cfg else 1

        if digits and len(digits) >= min_digits:
            ctx.variables[name] = digits
            await self._save_variable(ctx, name, digits)
            logger.info("[{cs}] Keypad {var} captured ({n} digits)", cs=ctx.call_sid, var=name, n=len(digits))
        else:
            logger.info("[{cs}] Keypad {var}: no valid input", cs=ctx.call_sid, var=name)

        await self._run(response, root, steps, index + 1, ctx, {}, ExecutionMode.REDIRECT, branch)

    async def _tag(self, *, step, ctx, **_) -> Next:
        cfg: TagConfig = step.config
        tag = {"name": cfg.tag_name, "value": cfg.tag_value}
        ctx.tags.append(tag)

        def _add(seg: Segment) -> None:
            seg.tags.append(tag)

        try:
            await self.store.mutate(ctx.call_sid, ctx.segment_number, _add)
        except Exception as e:
            logger.error("[{cs}] Could not save tag {name}: {err}", cs=ctx.call_sid, name=cfg.tag_name, err=str(e))
        return Next.CHAIN

    async def _voicemail(self, *, response, step, ctx, **_) -> Next:
        cfg: VoicemailConfig = step.config
        if cfg.greeting is not None and (cfg.greeting.text or cfg.greeting.recording_url):
            render_message(response, cfg.greeting)
        else:
            say(response, VOICEMAIL_GREETING)

        response.record(
            max_length=cfg.max_length,
            play_beep=True,
            action=self.urls.voicemail(ctx.tenant_id, ctx.call_sid),
            method="POST",
            transcribe=cfg.transcribe,
            transcribe_callback=self.urls.transcription(ctx.tenant_id, ctx.call_sid) if cfg.transcribe else None,
            recording_status_callback=self.urls.recording(ctx.tenant_id, ctx.call_sid),
            recording_status_callback_method="POST",
        )
        response.hangup()
        return Next.STOP

    async def _hangup(self, *, response, step, **_) -> Next:
        cfg: HangupConfig = step.config
        render_message(response, cfg.message)
        response.hangup()
        return Next.STOP

    async def _save_variable(self, ctx: CallContext, name: str, value: str) -> None:
        def _set(seg: Segment) -> None:
            seg.scratch.variables[name] = value

        try:
            await self.store.mutate(ctx.call_sid, ctx.segment_number, _set)
        except Exception as e:
            logger.error("[{cs}] Could not save variable {var}: {err}", cs=ctx.call_sid, var=name, err=str(e))
