"""Tests for alert classification, the alert lifecycle, overdue checks,
notification delivery and the submission workflow."""
from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import httpx
import pytest

from pulse import services
from pulse.alerts import AlertEngine, classify_alert
from pulse.config import Settings
from pulse.errors import AlertStateError, NotFoundError, ReviewError, SubmissionError
from pulse.evaluator import Threshold
from pulse.models import Alert
from pulse.notifier import NullNotifier, WebhookNotifier, build_notifier, dispatch
from pulse.services import Analytics
from pulse.store import SqlStore

BAND_THRESHOLD = {"green": 80, "amber": 60, "red": 40}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyAlert:
    th = Threshold.from_mapping(BAND_THRESHOLD)

    def test_below_red_is_critical(self):
        decision = classify_alert(30, 100, self.th, "higher_is_better")
        assert decision.type == "threshold_breach"
        assert decision.severity == "critical"

    def test_below_green_is_high(self):
        decision = classify_alert(70, 100, self.th, "higher_is_better")
        assert decision.type == "threshold_breach"
        assert decision.severity == "high"

    def test_exceeded_target_is_low(self):
        decision = classify_alert(115, 100, self.th, "higher_is_better")
        assert decision.type == "target_exceeded"
        assert decision.severity == "low"

    def test_on_track_raises_nothing(self):
        assert classify_alert(90, 100, self.th, "higher_is_better") is None
        assert classify_alert(110, 100, self.th, "higher_is_better") is None

    def test_lower_is_better_mirrors(self):
        th = Threshold.from_mapping({"green": 100, "amber": 120, "red": 140})
        assert classify_alert(15, 10, th, "lower_is_better").severity == "critical"
        assert classify_alert(11, 10, th, "lower_is_better").severity == "high"
        assert classify_alert(8, 10, th, "lower_is_better").type == "target_exceeded"
        assert classify_alert(9.5, 10, th, "lower_is_better") is None


# ---------------------------------------------------------------------------
# Submission evaluation through the engine
# ---------------------------------------------------------------------------


class TestOnSubmission:
    def test_creates_one_alert_with_details(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        actual = factory.actual(target, 30, status="pending")

        alert = analytics.alerts.on_submission(kpi, target, actual)
        assert alert.severity == "critical"
        assert alert.kpi_id == kpi.id
        assert alert.department_id == department.id
        assert alert.is_read is False and alert.is_resolved is False
        assert "Critical" in alert.title
        assert alert.details["period"] == "Q3 2026"
        assert alert.details["status"] == "red"
        assert alert.details["progress"] == 30
        assert len(analytics.alerts.list_alerts()) == 1

    def test_no_alert_when_on_track(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        actual = factory.actual(target, 90)
        assert analytics.alerts.on_submission(kpi, target, actual) is None
        assert analytics.alerts.list_alerts() == []

    def test_evaluate_submission_skips_missing_actual(self, analytics):
        assert analytics.alerts.evaluate_submission(9999) is None

    def test_notifier_receives_alert(self, session, settings, department, factory):
        notifier = MagicMock()
        engine = AlertEngine(SqlStore(session), notifier, settings)
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        alert = engine.on_submission(kpi, target, factory.actual(target, 70))
        notifier.send.assert_called_once_with(alert)

    def test_notifier_failure_keeps_alert(self, session, settings, department, factory):
        notifier = MagicMock()
        notifier.send.side_effect = RuntimeError("webhook down")
        engine = AlertEngine(SqlStore(session), notifier, settings)
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        alert = engine.on_submission(kpi, target, factory.actual(target, 30))
        assert alert.id is not None
        assert session.get(Alert, alert.id) is not None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.fixture()
    def alert(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        return analytics.alerts.on_submission(kpi, target, factory.actual(target, 30))

    def test_mark_read_is_idempotent(self, analytics, alert):
        assert analytics.alerts.mark_read(alert.id).is_read is True
        assert analytics.alerts.mark_read(alert.id).is_read is True

    def test_resolve_records_resolver(self, analytics, alert):
        resolved = analytics.alerts.mark_resolved(alert.id, resolver_id=7)
        assert resolved.is_resolved is True
        assert resolved.resolved_by == 7
        assert resolved.resolved_at is not None

    def test_resolve_twice_fails(self, analytics, alert):
        analytics.alerts.mark_resolved(alert.id, resolver_id=7)
        with pytest.raises(AlertStateError):
            analytics.alerts.mark_resolved(alert.id, resolver_id=8)

    def test_missing_alert(self, analytics):
        with pytest.raises(NotFoundError):
            analytics.alerts.mark_read(424242)

    def test_list_filters(self, analytics, alert):
        assert len(analytics.alerts.list_alerts(is_read=False)) == 1
        analytics.alerts.mark_read(alert.id)
        assert analytics.alerts.list_alerts(is_read=False) == []
        assert len(analytics.alerts.list_alerts(severity="critical")) == 1

    def test_update_alert_service(self, analytics, alert):
        updated = services.update_alert(analytics, alert.id, is_read=True, is_resolved=True, user_id=3)
        assert updated.is_read and updated.is_resolved
        assert updated.resolved_by == 3


# ---------------------------------------------------------------------------
# Overdue submissions
# ---------------------------------------------------------------------------


class TestOverdue:
    def test_flags_closed_period_without_actual(self, analytics, department, factory):
        kpi = factory.kpi(department)
        factory.target(kpi, 2026, 2, 100)
        created = analytics.alerts.check_overdue(date(2026, 7, 20))
        assert len(created) == 1
        assert created[0].type == "overdue_submission"
        assert created[0].details["period"] == "Q2 2026"

    def test_not_flagged_during_grace(self, analytics, department, factory):
        kpi = factory.kpi(department)
        factory.target(kpi, 2026, 2, 100)
        assert analytics.alerts.check_overdue(date(2026, 7, 10)) == []

    def test_not_flagged_when_submitted(self, analytics, department, factory):
        kpi = factory.kpi(department)
        factory.actual(factory.target(kpi, 2026, 2, 100), 95)
        assert analytics.alerts.check_overdue(date(2026, 7, 20)) == []

    def test_rejected_actual_does_not_count(self, analytics, department, factory):
        kpi = factory.kpi(department)
        factory.actual(factory.target(kpi, 2026, 2, 100), 95, status="rejected")
        assert len(analytics.alerts.check_overdue(date(2026, 7, 20))) == 1

    def test_not_duplicated(self, analytics, department, factory):
        kpi = factory.kpi(department)
        factory.target(kpi, 2026, 2, 100)
        analytics.alerts.check_overdue(date(2026, 7, 20))
        assert analytics.alerts.check_overdue(date(2026, 7, 25)) == []

    def test_no_target_no_alert(self, analytics, department, factory):
        factory.kpi(department)
        assert analytics.alerts.check_overdue(date(2026, 7, 20)) == []


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class TestNotifier:
    def _alert(self) -> Alert:
        return Alert(id=1, type="threshold_breach", severity="high", title="Warning: Revenue",
                     description="Revenue fell", kpi_id=2, department_id=3)

    def test_webhook_posts_payload(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        WebhookNotifier("https://hooks.example/alerts", client=client).send(self._alert())
        assert len(seen) == 1
        assert seen[0].url == "https://hooks.example/alerts"
        assert b"[HIGH] Warning: Revenue" in seen[0].content

    def test_webhook_error_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            WebhookNotifier("https://hooks.example/alerts", client=client).send(self._alert())

    def test_dispatch_swallows_failures(self):
        notifier = MagicMock()
        notifier.send.side_effect = httpx.ConnectError("refused")
        assert dispatch(notifier, self._alert()) is False
        assert dispatch(None, self._alert()) is False
        assert dispatch(NullNotifier(), self._alert()) is True

    def test_build_notifier(self, settings):
        assert isinstance(build_notifier(settings), NullNotifier)
        hooked = settings.model_copy(update={"webhook_url": "https://hooks.example/alerts"})
        assert isinstance(build_notifier(hooked), WebhookNotifier)


# ---------------------------------------------------------------------------
# Submission workflow
# ---------------------------------------------------------------------------


class TestSubmitActual:
    def test_submission_alerts_under_submission_policy(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        actual, alert = services.submit_actual(
            analytics, kpi_id=kpi.id, target_id=target.id, actual_value=70,
            submitted_by=5, evidence_files=["q3.pdf"], comments="estimate",
        )
        assert actual.status == "pending"
        assert actual.evidence_files == ["q3.pdf"]
        assert alert.severity == "high"
        assert alert.triggered_by == 5

    def test_env_policy_is_case_insensitive(self, session, department, factory, monkeypatch):
        monkeypatch.setenv("PULSE_ALERT_POLICY", "Submission")
        analytics = Analytics(session, notifier=NullNotifier(), settings=Settings())
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        _, alert = services.submit_actual(analytics, kpi_id=kpi.id, target_id=target.id, actual_value=10)
        assert alert is not None
        assert alert.severity == "critical"

    def test_wrong_target(self, analytics, department, factory):
        kpi = factory.kpi(department)
        other = factory.kpi(department, name="Costs")
        target = factory.target(other, 2026, 3)
        with pytest.raises(SubmissionError):
            services.submit_actual(analytics, kpi_id=kpi.id, target_id=target.id, actual_value=1)

    def test_missing_kpi(self, analytics):
        with pytest.raises(NotFoundError):
            services.submit_actual(analytics, kpi_id=99, target_id=1, actual_value=1)

    def test_alert_failure_does_not_fail_submission(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 0)
        actual, alert = services.submit_actual(
            analytics, kpi_id=kpi.id, target_id=target.id, actual_value=12,
        )
        assert alert is None
        assert actual.id is not None
        assert analytics.store.get_actual(actual.id).actual_value == 12


class TestReviewActual:
    def test_approval_policy_alerts_on_approve(self, session, settings, department, factory):
        analytics = Analytics(session, NullNotifier(), settings.model_copy(update={"alert_policy": "approval"}))
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        actual, alert = services.submit_actual(
            analytics, kpi_id=kpi.id, target_id=target.id, actual_value=30,
        )
        assert alert is None

        reviewed, alert = services.review_actual(analytics, actual.id, status="approved", reviewer_id=2)
        assert reviewed.status == "approved"
        assert reviewed.reviewed_by == 2
        assert alert.severity == "critical"

    def test_reject_raises_no_alert(self, session, settings, department, factory):
        analytics = Analytics(session, NullNotifier(), settings.model_copy(update={"alert_policy": "approval"}))
        kpi = factory.kpi(department)
        actual = factory.actual(factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD), 30, status="pending")
        reviewed, alert = services.review_actual(analytics, actual.id, status="rejected", reviewer_id=2)
        assert reviewed.status == "rejected"
        assert alert is None

    def test_review_only_once(self, analytics, department, factory):
        kpi = factory.kpi(department)
        actual = factory.actual(factory.target(kpi, 2026, 3), 90, status="pending")
        services.review_actual(analytics, actual.id, status="approved", reviewer_id=1)
        with pytest.raises(ReviewError):
            services.review_actual(analytics, actual.id, status="rejected", reviewer_id=1)

    def test_unknown_status(self, analytics, department, factory):
        kpi = factory.kpi(department)
        actual = factory.actual(factory.target(kpi, 2026, 3), 90, status="pending")
        with pytest.raises(ReviewError):
            services.review_actual(analytics, actual.id, status="maybe", reviewer_id=1)



class TestAuditTrail:
    def test_submit_and_review_are_recorded(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        actual, _ = services.submit_actual(
            analytics, kpi_id=kpi.id, target_id=target.id, actual_value=90, submitted_by=5,
        )
        services.review_actual(analytics, actual.id, status="rejected", reviewer_id=2, review_comments="typo")

        review, submit = analytics.store.get_audit_logs(resource_type="actual", resource_id=actual.id)
        assert submit.action == "submit"
        assert submit.user_id == 5
        assert submit.new_values["actual_value"] == 90
        assert review.action == "review"
        assert review.user_id == 2
        assert review.old_values == {"status": "pending"}
        assert review.new_values == {"status": "rejected", "review_comments": "typo"}

    def test_failed_review_leaves_no_entry(self, analytics, department, factory):
        kpi = factory.kpi(department)
        actual = factory.actual(factory.target(kpi, 2026, 3), 90)
        with pytest.raises(ReviewError):
            services.review_actual(analytics, actual.id, status="rejected", reviewer_id=1)
        assert analytics.store.get_audit_logs() == []

    def test_alert_update_is_recorded_once(self, analytics, department, factory):
        kpi = factory.kpi(department)
        target = factory.target(kpi, 2026, 3, 100, BAND_THRESHOLD)
        alert = analytics.alerts.on_submission(kpi, target, factory.actual(target, 30))
        services.update_alert(analytics, alert.id, is_read=True, user_id=3)
        services.update_alert(analytics, alert.id, is_read=True, user_id=3)

        entries = analytics.store.get_audit_logs(resource_type="alert")
        assert len(entries) == 1
        assert entries[0].old_values == {"is_read": False, "is_resolved": False}
        assert entries[0].new_values == {"is_read": True, "is_resolved": False}
        assert analytics.store.get_audit_logs(user_id=3) == entries

class TestSettings:
    def test_policy_validated(self):
        with pytest.raises(ValueError):
            Settings(alert_policy="sometimes")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PULSE_EXCEEDED_MARGIN", "0.25")
        monkeypatch.setenv("PULSE_ALERT_POLICY", "Approval")
        s = Settings()
        assert s.exceeded_margin == 0.25
        assert s.alert_policy == "approval"

    def test_env_policy_is_validated(self, monkeypatch):
        monkeypatch.setenv("PULSE_ALERT_POLICY", "bogus")
        with pytest.raises(ValueError):
            Settings()
