"""
Decision trees, one per alert type.

Each investigation declares the resources it needs and returns a conclusion
(an ordered list of actions). The registry maps incident titles to them.
"""

from triage.investigations.base import Investigation
from triage.investigations.registry import InvestigationRegistry, build_registry, substring_matcher

__all__ = ["Investigation", "InvestigationRegistry", "build_registry", "substring_matcher"]
