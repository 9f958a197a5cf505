"""Structural checks on a flow tree, run before a flow is saved."""

from __future__ import annotations

from flows.models import CONFIG_MODELS, Step, child_lists, walk


class FlowDefinitionError(ValueError):
    """A flow that can never execute correctly. Rejected at create/update time."""


class DuplicateStepId(FlowDefinitionError):
    pass


class MisplacedTerminalStep(FlowDefinitionError):
    pass


class UnknownStepType(FlowDefinitionError):
    pass


def validate(steps: list[Step]) -> None:
    """Raise FlowDefinitionError if the tree violates a structural invariant."""
    validate_step_types(steps)
    validate_terminal_steps(steps)
    validate_unique_step_ids(steps)


def validate_step_types(steps: list[Step]) -> None:
    for path, i, step in walk(steps):
        if step.type not in CONFIG_MODELS:
            raise UnknownStepType(f'Unknown step type "{step.type}" at {path}[{i}]')


def validate_terminal_steps(steps: list[Step], path: str = "root") -> None:
    """A voicemail/hangup step must be the last step at its nesting level."""
    for i, step in enumerate(steps):
        if step.is_terminal and i < len(steps) - 1:
            after = len(steps) - i - 1
            raise MisplacedTerminalStep(
                f'Terminal step "{step.type}" at {path}[{i}] must be the last step. '
                f"Found {after} step(s) after it."
            )
        for _, name, nested in child_lists(step):
            validate_terminal_steps(nested, f"{path}[{i}].{name}")


def validate_unique_step_ids(steps: list[Step]) -> None:
    seen: dict[str, str] = {}
    for path, i, step in walk(steps):
        where = f"{path}[{i}]"
        if step.id in seen:
            raise DuplicateStepId(f'Duplicate step id "{step.id}" at {where} (first used at {seen[step.id]})')
        seen[step.id] = where
