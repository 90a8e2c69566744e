from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from reloader.src.config import AnnotationKeys
from reloader.src.metrics import METRICS
from reloader.src.pause import (
    RESUME_RETRY_DELAY,
    DeploymentPauser,
    DurationParseError,
    PauseTimerRegistry,
    parse_duration,
)

KEYS = AnnotationKeys()
NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeTimer:
    def __init__(self, interval: float, function: Any) -> None:
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True


class TimerRecorder:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval: float, function: Any) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer


def make_deployment(
    paused: bool = False,
    paused_at: str | None = None,
    period: str | None = "5m",
) -> dict[str, Any]:
    annotations: dict[str, str] = {}
    if period is not None:
        annotations[KEYS.pause_period] = period
    if paused_at is not None:
        annotations[KEYS.paused_at] = paused_at
    return {
        "metadata": {"name": "web", "namespace": "apps", "annotations": annotations},
        "spec": {"paused": paused},
    }


def _make_pauser(
    apps_api: Any = None, now: datetime = NOW
) -> tuple[DeploymentPauser, TimerRecorder, PauseTimerRegistry]:
    recorder = TimerRecorder()
    registry = PauseTimerRegistry(timer_factory=recorder)
    pauser = DeploymentPauser(
        apps_api=apps_api or MagicMock(),
        registry=registry,
        annotations=KEYS,
        now_fn=lambda: now,
    )
    return pauser, recorder, registry


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("5m", timedelta(minutes=5)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("1.5h", timedelta(minutes=90)),
            ("300ms", timedelta(milliseconds=300)),
            ("0", timedelta(0)),
            ("-2s", timedelta(seconds=-2)),
        ],
    )
    def test_valid(self, value: str, expected: timedelta) -> None:
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "5", "5 minutes", "m", "1d"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(DurationParseError):
            parse_duration(value)

    def test_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_duration("soon")


class TestPauseTimerRegistry:
    def test_first_timer_wins(self) -> None:
        recorder = TimerRecorder()
        registry = PauseTimerRegistry(timer_factory=recorder)

        assert registry.create("apps/web", 10, lambda: None) is True
        assert registry.create("apps/web", 20, lambda: None) is False

        assert len(registry) == 1
        assert len(recorder.timers) == 1
        assert recorder.timers[0].interval == 10
        assert recorder.timers[0].started is True

    def test_negative_delay_is_clamped(self) -> None:
        recorder = TimerRecorder()
        registry = PauseTimerRegistry(timer_factory=recorder)

        registry.create("apps/web", -5, lambda: None)

        assert recorder.timers[0].interval == 0.0

    def test_cancel_stops_and_forgets(self) -> None:
        recorder = TimerRecorder()
        registry = PauseTimerRegistry(timer_factory=recorder)
        registry.create("apps/web", 10, lambda: None)

        assert registry.cancel("apps/web") is True
        assert registry.cancel("apps/web") is False
        assert recorder.timers[0].cancelled is True
        assert not registry.exists("apps/web")

    def test_cancel_all_updates_gauge(self) -> None:
        recorder = TimerRecorder()
        registry = PauseTimerRegistry(timer_factory=recorder)
        registry.create("apps/a", 10, lambda: None)
        registry.create("apps/b", 10, lambda: None)
        assert METRICS.paused_deployments._value.get() == 2

        registry.cancel_all()

        assert len(registry) == 0
        assert all(timer.cancelled for timer in recorder.timers)
        assert METRICS.paused_deployments._value.get() == 0


class TestPauseDeployment:
    def test_pauses_and_arms_timer_for_full_period(self) -> None:
        apps_api = MagicMock()
        pauser, recorder, registry = _make_pauser(apps_api)

        assert pauser.pause_deployment(make_deployment(), "5m") is True

        kwargs = apps_api.patch_namespaced_deployment.call_args.kwargs
        assert kwargs["name"] == "web"
        assert kwargs["namespace"] == "apps"
        assert kwargs["body"] == {
            "spec": {"paused": True},
            "metadata": {"annotations": {KEYS.paused_at: "2026-01-01T12:00:00Z"}},
        }
        assert registry.exists("apps/web")
        assert recorder.timers[0].interval == pytest.approx(300)

    def test_already_paused_deployment_is_left_alone(self) -> None:
        apps_api = MagicMock()
        pauser, recorder, _ = _make_pauser(apps_api)

        assert pauser.pause_deployment(make_deployment(paused=True), "5m") is False

        apps_api.patch_namespaced_deployment.assert_not_called()
        assert recorder.timers == []

    def test_invalid_period_does_not_pause(self) -> None:
        apps_api = MagicMock()
        pauser, _, _ = _make_pauser(apps_api)

        assert pauser.pause_deployment(make_deployment(period="forever")) is False

        apps_api.patch_namespaced_deployment.assert_not_called()

    def test_patch_failure_falls_back_to_replace(self) -> None:
        apps_api = MagicMock()
        apps_api.patch_namespaced_deployment.side_effect = ApiException(status=422, reason="bad")
        pauser, _, registry = _make_pauser(apps_api)
        deployment = make_deployment()

        assert pauser.pause_deployment(deployment, "5m") is True

        body = apps_api.replace_namespaced_deployment.call_args.kwargs["body"]
        assert body["spec"]["paused"] is True
        assert body["metadata"]["annotations"][KEYS.paused_at] == "2026-01-01T12:00:00Z"
        assert registry.exists("apps/web")


class TestResume:
    def test_timer_callback_resumes_and_clears_annotation(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.return_value = make_deployment(
            paused=True, paused_at="2026-01-01T12:00:00Z"
        )
        pauser, recorder, registry = _make_pauser(apps_api)
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))

        recorder.timers[0].function()

        kwargs = apps_api.patch_namespaced_deployment.call_args.kwargs
        assert kwargs["body"] == {
            "spec": {"paused": False},
            "metadata": {"annotations": {KEYS.paused_at: None}},
        }
        assert not registry.exists("apps/web")

    def test_manual_resume_cancels_pending_timer(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.return_value = make_deployment(
            paused=True, paused_at="2026-01-01T12:00:00Z"
        )
        pauser, recorder, registry = _make_pauser(apps_api)
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))

        assert pauser.resume_deployment("web", "apps") is True

        assert recorder.timers[0].cancelled is True
        assert not registry.exists("apps/web")

    def test_user_paused_deployment_is_not_resumed(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.return_value = make_deployment(paused=True)
        pauser, _, _ = _make_pauser(apps_api)

        assert pauser.resume_deployment("web", "apps") is False

        apps_api.patch_namespaced_deployment.assert_not_called()

    def test_read_failure_does_not_raise(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.side_effect = ApiException(status=404, reason="gone")
        pauser, _, _ = _make_pauser(apps_api)

        assert pauser.resume_deployment("web", "apps") is False


class TestRecovery:
    def test_rearms_timer_for_remaining_time(self) -> None:
        apps_api = MagicMock()
        pauser, recorder, _ = _make_pauser(apps_api)
        deployment = make_deployment(paused=True, paused_at="2026-01-01T11:58:00Z")

        pauser.handle_missing_timer(deployment, "5m")

        assert recorder.timers[0].interval == pytest.approx(180)
        apps_api.patch_namespaced_deployment.assert_not_called()

    def test_elapsed_pause_resumes_immediately(self) -> None:
        apps_api = MagicMock()
        deployment = make_deployment(paused=True, paused_at="2026-01-01T11:54:00Z")
        apps_api.read_namespaced_deployment.return_value = deployment
        pauser, recorder, _ = _make_pauser(apps_api)

        pauser.handle_missing_timer(deployment, timedelta(minutes=5))

        assert recorder.timers == []
        body = apps_api.patch_namespaced_deployment.call_args.kwargs["body"]
        assert body["spec"] == {"paused": False}
        assert body["metadata"]["annotations"] == {KEYS.paused_at: None}

    def test_unparsable_timestamp_resumes_immediately(self) -> None:
        apps_api = MagicMock()
        deployment = make_deployment(paused=True, paused_at="yesterday")
        apps_api.read_namespaced_deployment.return_value = deployment
        pauser, recorder, _ = _make_pauser(apps_api)

        pauser.handle_missing_timer(deployment, "5m")

        assert recorder.timers == []
        apps_api.patch_namespaced_deployment.assert_called_once()

    def test_reconcile_recovers_only_reloader_pauses_without_timers(self) -> None:
        apps_api = MagicMock()
        ours = make_deployment(paused=True, paused_at="2026-01-01T11:59:00Z")
        users = make_deployment(paused=True)
        users["metadata"]["name"] = "manual"
        running = make_deployment()
        running["metadata"]["name"] = "running"
        apps_api.list_namespaced_deployment.return_value = SimpleNamespace(
            items=[ours, users, running]
        )
        pauser, recorder, registry = _make_pauser(apps_api)

        recovered = pauser.reconcile_paused_deployments("apps")

        assert recovered == 1
        assert registry.exists("apps/web")
        assert recorder.timers[0].interval == pytest.approx(240)
        assert pauser.reconcile_paused_deployments("apps") == 0

    def test_reconcile_all_namespaces(self) -> None:
        apps_api = MagicMock()
        apps_api.list_deployment_for_all_namespaces.return_value = SimpleNamespace(items=[])
        pauser, _, _ = _make_pauser(apps_api)

        assert pauser.reconcile_paused_deployments() == 0

        apps_api.list_deployment_for_all_namespaces.assert_called_once()


class TestResumeFailures:
    def test_failed_resume_from_timer_schedules_retry(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.return_value = make_deployment(
            paused=True, paused_at="2026-01-01T12:00:00Z"
        )
        apps_api.patch_namespaced_deployment.side_effect = ApiException(status=500, reason="boom")
        pauser, recorder, registry = _make_pauser(apps_api)
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))

        recorder.timers[0].function()

        assert registry.exists("apps/web")
        assert len(recorder.timers) == 2
        assert recorder.timers[1].interval == pytest.approx(RESUME_RETRY_DELAY.total_seconds())
        assert recorder.timers[1].started is True

        apps_api.patch_namespaced_deployment.side_effect = None
        recorder.timers[1].function()

        assert not registry.exists("apps/web")

    def test_failed_manual_resume_keeps_pending_timer(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.return_value = make_deployment(
            paused=True, paused_at="2026-01-01T12:00:00Z"
        )
        apps_api.patch_namespaced_deployment.side_effect = ApiException(status=500, reason="boom")
        pauser, recorder, registry = _make_pauser(apps_api)
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))

        assert pauser.resume_deployment("web", "apps") is False

        assert registry.exists("apps/web")
        assert recorder.timers[0].cancelled is False
        assert len(recorder.timers) == 1

    def test_transient_read_error_schedules_retry(self) -> None:
        apps_api = MagicMock()
        apps_api.read_namespaced_deployment.side_effect = ApiException(status=503, reason="down")
        pauser, recorder, registry = _make_pauser(apps_api)
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))

        recorder.timers[0].function()

        assert registry.exists("apps/web")
        assert recorder.timers[-1].interval == pytest.approx(RESUME_RETRY_DELAY.total_seconds())


class TestPauseAlreadyPaused:
    def test_reloader_pause_without_timer_is_rearmed(self) -> None:
        apps_api = MagicMock()
        pauser, recorder, registry = _make_pauser(apps_api)
        deployment = make_deployment(paused=True, paused_at="2026-01-01T11:58:00Z")

        assert pauser.pause_deployment(deployment, "5m") is False

        assert registry.exists("apps/web")
        assert recorder.timers[0].interval == pytest.approx(180)
        apps_api.patch_namespaced_deployment.assert_not_called()

    def test_pending_timer_is_left_alone(self) -> None:
        pauser, recorder, _ = _make_pauser()
        pauser.create_resume_timer("apps", "web", timedelta(minutes=5))
        deployment = make_deployment(paused=True, paused_at="2026-01-01T11:58:00Z")

        assert pauser.pause_deployment(deployment, "5m") is False

        assert len(recorder.timers) == 1
        assert recorder.timers[0].cancelled is False


def test_unparsable_period_on_missing_timer_resumes_immediately() -> None:
    apps_api = MagicMock()
    deployment = make_deployment(paused=True, paused_at="2026-01-01T11:59:00Z")
    apps_api.read_namespaced_deployment.return_value = deployment
    pauser, recorder, _ = _make_pauser(apps_api)

    pauser.handle_missing_timer(deployment, "bogus")

    assert recorder.timers == []
    body = apps_api.patch_namespaced_deployment.call_args.kwargs["body"]
    assert body["spec"] == {"paused": False}


def test_pause_then_recover_in_new_process_keeps_full_period() -> None:
    apps_api = MagicMock()
    pauser, recorder, _ = _make_pauser(apps_api)
    pauser.pause_deployment(make_deployment(), "5m")
    stamp = apps_api.patch_namespaced_deployment.call_args.kwargs["body"]["metadata"]["annotations"]
    paused = make_deployment(paused=True, paused_at=stamp[KEYS.paused_at])
    assert recorder.timers[0].interval == pytest.approx(300)

    restarted_api = MagicMock()
    restarted, restarted_timers, restarted_registry = _make_pauser(restarted_api)
    restarted.handle_missing_timer(paused, "5m")

    assert restarted_registry.exists("apps/web")
    assert restarted_timers.timers[0].interval == pytest.approx(300)
    restarted_api.patch_namespaced_deployment.assert_not_called()
    restarted_api.read_namespaced_deployment.assert_not_called()
