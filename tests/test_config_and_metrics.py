from __future__ import annotations

from unittest.mock import patch

from triage.config import DEFAULT_SERVICE_ACCOUNTS, load_config
from triage.metrics import MetricsRecorder


def test_defaults(monkeypatch):
    for name in ("TRIAGE_EXPERIMENTAL_ENABLED", "TRIAGE_AI_TIMEOUT_SECONDS", "TRIAGE_SERVICE_ACCOUNTS"):
        monkeypatch.delenv(name, raising=False)

    config = load_config()

    assert config.experimental_enabled is False
    assert config.aws_region == "us-east-1"
    assert config.service_accounts == DEFAULT_SERVICE_ACCOUNTS
    assert config.ai_agent.timeout_seconds == 300


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TRIAGE_EXPERIMENTAL_ENABLED", "true")
    monkeypatch.setenv("TRIAGE_OCM_URL", "https://api.stage.example.com/")
    monkeypatch.setenv("TRIAGE_AI_ENABLED", "1")
    monkeypatch.setenv("TRIAGE_AI_ALLOWED_ORGS", "org-1, org-2,")
    monkeypatch.setenv("TRIAGE_SERVICE_ACCOUNTS", "sa-1")

    config = load_config()

    assert config.experimental_enabled is True
    assert config.ocm_url == "https://api.stage.example.com"
    assert config.ai_agent.enabled is True
    assert config.ai_agent.allowed_orgs == ("org-1", "org-2")
    assert config.service_accounts == ("sa-1",)


def test_ai_timeout_is_clamped(monkeypatch):
    monkeypatch.setenv("TRIAGE_AI_TIMEOUT_SECONDS", "1")
    assert load_config().ai_agent.timeout_seconds == 5

    monkeypatch.setenv("TRIAGE_AI_TIMEOUT_SECONDS", "999999")
    assert load_config().ai_agent.timeout_seconds == 3600

    monkeypatch.setenv("TRIAGE_AI_TIMEOUT_SECONDS", "soon")
    assert load_config().ai_agent.timeout_seconds == 300


def test_metrics_are_isolated_per_recorder():
    first = MetricsRecorder()
    second = MetricsRecorder()

    first.alert_received("CHGM")
    first.alert_received("CHGM")
    first.restriction_set("CHGM", "summary")

    assert first.value("cad_investigate_alerts_total", alert_type="CHGM") == 2
    assert first.value("cad_investigate_limitedsupport_set_total", alert_type="CHGM", ls_summary="summary") == 1
    assert second.value("cad_investigate_alerts_total", alert_type="CHGM") == 0


def test_push_only_with_gateway():
    with patch("triage.metrics.push_to_gateway") as push:
        MetricsRecorder().push()
        assert push.call_count == 0

        recorder = MetricsRecorder(pushgateway="pushgateway:9091")
        recorder.push()
        push.assert_called_once_with("pushgateway:9091", job="cad", registry=recorder.registry)


def test_push_failure_is_logged(caplog):
    with patch("triage.metrics.push_to_gateway", side_effect=OSError("connection refused")):
        MetricsRecorder(pushgateway="pushgateway:9091").push()
    assert "Failed to push metrics" in caplog.text
