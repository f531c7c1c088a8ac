from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from triage.config import TriageConfig
from triage.investigations.base import Investigation

Matcher = Callable[[str], bool]


@dataclass
class InvestigationRegistry:
    """Ordered (matcher, investigation) pairs; the first match wins."""

    entries: List[Tuple[Matcher, Investigation]] = field(default_factory=list)

    def register(self, investigation: Investigation, matcher: Optional[Matcher] = None) -> None:
        self.entries.append((matcher or investigation.alert_title_match, investigation))

    def for_title(self, title: str, experimental_enabled: bool = False) -> Optional[Investigation]:
        for matcher, investigation in self.entries:
            if investigation.is_experimental() and not experimental_enabled:
                continue
            if matcher(title):
                return investigation
        return None

    def names(self) -> List[str]:
        return [inv.name() for _, inv in self.entries]


def substring_matcher(needle: str) -> Matcher:
    return lambda title: needle in title


def build_registry(config: TriageConfig) -> InvestigationRegistry:
    # Explicit composition; order matters (the AI-assisted catch-all goes last).
    from triage.investigations.ai_assisted import AiAssistedInvestigation
    from triage.investigations.cluster_missing import ClusterMissingInvestigation
    from triage.investigations.provisioning_delay import ProvisioningDelayInvestigation

    reg = InvestigationRegistry()
    reg.register(ClusterMissingInvestigation())
    reg.register(ProvisioningDelayInvestigation())
    reg.register(AiAssistedInvestigation(config.ai_agent))
    return reg
