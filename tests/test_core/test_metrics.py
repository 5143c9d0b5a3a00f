"""
Unit tests for Prometheus push metrics
"""
from podpush.core.metrics import (
    REGISTRY,
    get_content_type,
    get_metrics,
    record_dispatch,
    record_push_notification_sent,
    record_token_refresh,
)


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestRecordPushNotificationSent:

    def test_increments_counter_by_count(self):
        before = _sample("push_notifications_sent_total", provider="metrics-test", status="success")

        record_push_notification_sent("metrics-test", "success", count=3, duration_seconds=0.2)

        after = _sample("push_notifications_sent_total", provider="metrics-test", status="success")
        assert after - before == 3

    def test_zero_count_is_not_recorded(self):
        before = _sample("push_notifications_sent_total", provider="metrics-zero", status="failure")

        record_push_notification_sent("metrics-zero", "failure", count=0)

        after = _sample("push_notifications_sent_total", provider="metrics-zero", status="failure")
        assert after == before

    def test_duration_is_observed(self):
        before = _sample("push_notification_duration_seconds_count", provider="metrics-duration")

        record_push_notification_sent("metrics-duration", "success", count=1, duration_seconds=1.5)

        after = _sample("push_notification_duration_seconds_count", provider="metrics-duration")
        assert after - before == 1


class TestOtherMetrics:

    def test_record_token_refresh(self):
        before = _sample("push_token_refresh_total", provider="firebase", status="success")

        record_token_refresh("firebase", "success")

        assert _sample("push_token_refresh_total", provider="firebase", status="success") == before + 1

    def test_record_dispatch(self):
        labels = {"provider": "onesignal", "target_type": "all", "outcome": "sent"}
        before = _sample("push_dispatch_total", **labels)

        record_dispatch("onesignal", "all", "sent")

        assert _sample("push_dispatch_total", **labels) == before + 1

    def test_get_metrics_exposition(self):
        record_token_refresh("firebase", "failure")

        output = get_metrics()

        assert b"push_token_refresh_total" in output
        assert get_content_type().startswith("text/plain")
