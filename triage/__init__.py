"""Alert triage decision engine for managed cluster fleets."""
