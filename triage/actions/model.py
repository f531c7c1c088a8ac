"""Remediation actions produced by a decision tree.

The set of variants is closed. `Escalate` and `Silence` are terminal: a
conclusion carries at most one of them, and the executor applies it last.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple, Union

from triage.core.notes import NoteWriter

ADVISORY_SEVERITIES = ("Debug", "Info", "Warning", "Error", "Fatal", "Critical", "Major")
DEFAULT_SERVICE_TAG = "SREManualAction"


class ActionValidationError(ValueError):
    pass


@dataclass(frozen=True)
class Note:
    content: str

    def validate(self) -> None:
        if not self.content.strip():
            raise ActionValidationError("note content is empty")


@dataclass(frozen=True)
class Escalate:
    reason: str

    def validate(self) -> None:
        if not self.reason.strip():
            raise ActionValidationError("escalation reason is empty")


@dataclass(frozen=True)
class Silence:
    reason: str

    def validate(self) -> None:
        if not self.reason.strip():
            raise ActionValidationError("silence reason is empty")


@dataclass(frozen=True)
class RestrictionAction:
    summary: str
    details: str
    context_label: str = ""

    @property
    def reason(self) -> Tuple[str, str]:
        return (self.summary, self.details)

    def validate(self) -> None:
        if not self.summary.strip():
            raise ActionValidationError("restriction summary is empty")
        if not self.details.strip():
            raise ActionValidationError("restriction details are empty")


@dataclass(frozen=True)
class RemoveRestrictionAction:
    summary: str
    details: str

    @property
    def reason(self) -> Tuple[str, str]:
        return (self.summary, self.details)

    def validate(self) -> None:
        if not self.summary.strip():
            raise ActionValidationError("restriction summary is empty")


@dataclass(frozen=True)
class AdvisoryAction:
    severity: str
    summary: str
    description: str
    service_tag: str = DEFAULT_SERVICE_TAG
    internal_only: bool = False
    allow_duplicates: bool = False

    def validate(self) -> None:
        if self.severity not in ADVISORY_SEVERITIES:
            raise ActionValidationError(f"invalid advisory severity: {self.severity!r}")
        if not self.summary.strip():
            raise ActionValidationError("advisory summary is empty")
        if not self.description.strip():
            raise ActionValidationError("advisory description is empty")
        if not self.service_tag.strip():
            raise ActionValidationError("advisory service tag is empty")


Action = Union[Note, Escalate, Silence, RestrictionAction, RemoveRestrictionAction, AdvisoryAction]

TERMINAL_ACTIONS = (Escalate, Silence)


def action_type(action: Action) -> str:
    return {
        Note: "note",
        Escalate: "escalate",
        Silence: "silence",
        RestrictionAction: "restriction",
        RemoveRestrictionAction: "remove_restriction",
        AdvisoryAction: "advisory",
    }[type(action)]


def is_terminal(action: Action) -> bool:
    return isinstance(action, TERMINAL_ACTIONS)


@dataclass(frozen=True)
class InvestigationConclusion:
    actions: Tuple[Action, ...] = ()
    restriction_set: bool = False
    restriction_removed: bool = False
    advisory_sent: bool = False

    def __post_init__(self) -> None:
        terminals = [a for a in self.actions if is_terminal(a)]
        if len(terminals) > 1:
            raise ActionValidationError(
                f"conclusion has {len(terminals)} terminal actions: {[action_type(a) for a in terminals]}"
            )

    @property
    def terminal(self) -> Union[Escalate, Silence, None]:
        for action in self.actions:
            if is_terminal(action):
                return action  # type: ignore[return-value]
        return None

    def action_types(self) -> List[str]:
        return [action_type(a) for a in self.actions]


class ConclusionBuilder:
    """
    Accumulates actions for one decision-tree run.

    The note buffer is captured when a terminal action is added, so every
    line appended before the terminal step lands in the incident note.
    """

    def __init__(self, notes: NoteWriter) -> None:
        self._notes = notes
        self._actions: List[Action] = []
        self._restriction_set = False
        self._restriction_removed = False
        self._advisory_sent = False

    def restrict(self, summary: str, details: str, context_label: str = "") -> "ConclusionBuilder":
        self._actions.append(RestrictionAction(summary=summary, details=details, context_label=context_label))
        self._restriction_set = True
        return self

    def remove_restriction(self, summary: str, details: str) -> "ConclusionBuilder":
        self._actions.append(RemoveRestrictionAction(summary=summary, details=details))
        self._restriction_removed = True
        return self

    def advise(self, action: AdvisoryAction) -> "ConclusionBuilder":
        self._actions.append(action)
        self._advisory_sent = True
        return self

    def escalate(self, reason: str) -> InvestigationConclusion:
        return self._finish(Escalate(reason=reason))

    def silence(self, reason: str) -> InvestigationConclusion:
        return self._finish(Silence(reason=reason))

    def build(self) -> InvestigationConclusion:
        """Finish without a terminal action (pre-steps that let the run continue)."""
        actions: List[Action] = []
        if not self._notes.is_empty():
            actions.append(Note(content=self._notes.render()))
        actions.extend(self._actions)
        return self._conclusion(actions)

    def _finish(self, terminal: Union[Escalate, Silence]) -> InvestigationConclusion:
        actions: List[Action] = [Note(content=self._notes.render())]
        actions.extend(self._actions)
        actions.append(terminal)
        return self._conclusion(actions)

    def _conclusion(self, actions: List[Action]) -> InvestigationConclusion:
        return InvestigationConclusion(
            actions=tuple(actions),
            restriction_set=self._restriction_set,
            restriction_removed=self._restriction_removed,
            advisory_sent=self._advisory_sent,
        )
