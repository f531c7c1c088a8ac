from __future__ import annotations

from typing import Protocol, Sequence

from triage.actions.model import InvestigationConclusion
from triage.resources import AlertContext, Capability


class Investigation(Protocol):
    """
    Decision tree for one alert type.

    `run` returns a conclusion or raises. Infrastructure-classified (and
    unclassified) errors propagate so the caller can retry the whole run;
    findings are handled inside the tree and turned into an escalation.
    """

    def name(self) -> str:
        """Human-readable name, also used as the metrics alert type."""

    def description(self) -> str:
        ...

    def alert_title_match(self, title: str) -> bool:
        """Return True if this investigation handles incidents with `title`."""

    def is_experimental(self) -> bool:
        """Experimental investigations only run when the experimental flag is set."""

    def requirements(self) -> Sequence[Capability]:
        """Capabilities the resolver must provide before `run`."""

    def run(self, ctx: AlertContext) -> InvestigationConclusion:
        ...
