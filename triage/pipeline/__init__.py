from triage.pipeline.runner import InvestigationRunner, RunResult, run_investigation

__all__ = ["InvestigationRunner", "RunResult", "run_investigation"]
