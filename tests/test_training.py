"""Tests for adapter training start, monitoring and cancellation."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from ethosync.service import training as training_module
from ethosync.service.errors import ConflictError, ValidationError
from ethosync.service.platform import PlatformError
from ethosync.service.tenant_setup import TenantHandle
from ethosync.service.training import (
    CANCELLED,
    COMPLETED,
    FAILED,
    SUPERSEDED_MESSAGE,
    TrainingMonitor,
    run_outcome,
)
from ethosync.storage.models import ETHICAL_DIMENSIONS

SCORES = {dim: 0.6 for dim in ETHICAL_DIMENSIONS}


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = None

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))


def _seed(store, user_id, count, *, approved=True, classification="growth_memory"):
    for i in range(count):
        store.add_interaction_memory(
            user_id, f"memory {i}", classification, SCORES, approved_for_training=approved
        )


@pytest.fixture
def tenant(runtime, fakes, ready_tenant):
    info = ready_tenant()
    return info, TenantHandle(store=info.store, connection_string=info.dsn)


class TestRunOutcome:
    @pytest.mark.parametrize(
        "run,expected",
        [
            ({"status": "SUCCEEDED"}, COMPLETED),
            ({"status": "completed"}, COMPLETED),
            ({"status": "failed"}, FAILED),
            ({"status": "aborted"}, FAILED),
            ({"status": "running"}, None),
            (None, None),
        ],
    )
    def test_mapping(self, run, expected):
        assert run_outcome(run) == expected


class TestStartTraining:
    async def test_refuses_with_too_few_samples(self, runtime, fakes, tenant):
        info, handle = tenant
        _seed(info.store, info.user.id, 4)

        with pytest.raises(ValidationError) as excinfo:
            await runtime.training.start(info.user, handle)

        assert excinfo.value.message == "Not enough approved training data (need at least 10 samples)"
        assert excinfo.value.extra["current"] == 4
        assert fakes.platform.job_triggers == []

    async def test_pending_rows_are_counted_only_after_auto_approval(self, runtime, fakes, tenant):
        info, handle = tenant
        _seed(info.store, info.user.id, 12)
        _seed(info.store, info.user.id, 3, approved=False)
        _seed(info.store, info.user.id, 2, approved=False, classification="needs_support")

        result = await runtime.training.start(info.user, handle)

        assert result["success"] is True
        counts = info.store.training_counts(info.user.id)
        assert counts["approved"]["total"] == 15
        assert counts["pending"]["needs_support"] == 2

    async def test_success_records_job_and_spawns_monitor(self, runtime, fakes, tenant):
        info, handle = tenant
        _seed(info.store, info.user.id, 10)

        result = await runtime.training.start(info.user, handle)

        assert result["status"] == "training"
        assert result["runId"] == "job-run-1"
        assert result["stats"]["total"] == 10
        trigger = fakes.platform.job_triggers[0]
        assert trigger["project_id"] == info.user.project_id
        assert trigger["job_id"] == "user-lora-training"
        assert trigger["env"]["USER_ID"] == info.user.id
        assert trigger["env"]["POSTGRES_URI"] == info.dsn
        assert trigger["env"]["ADAPTER_VERSION"] == result["adapterVersion"]
        job = info.store.get_training_job(result["trainingId"])
        assert job.status == "running"
        assert job.total_samples == 10
        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "training"
        assert user.adapter_version == result["adapterVersion"]
        assert fakes.spawn.names == [f"training-monitor-{info.user.id}"]

    async def test_trigger_failure_marks_failed_and_reraises(self, runtime, fakes, tenant):
        info, handle = tenant
        _seed(info.store, info.user.id, 10)
        fakes.platform.trigger_error = PlatformError(
            "Cloud platform error: job missing", status=404, body={"message": "job missing"}
        )

        with pytest.raises(PlatformError):
            await runtime.training.start(info.user, handle)

        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "failed"
        assert user.training_error == "Failed to start training: job missing"
        assert fakes.spawn.names == []

    async def test_trigger_without_run_id_marks_failed(self, runtime, fakes, tenant, monkeypatch):
        info, handle = tenant
        _seed(info.store, info.user.id, 10)

        async def no_id(project_id, job_id, runtime_environment):
            return {}

        monkeypatch.setattr(fakes.platform, "trigger_job_run", no_id)

        with pytest.raises(PlatformError, match="Job run returned no id"):
            await runtime.training.start(info.user, handle)

        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "failed"
        assert user.training_error == "Failed to start training: Job run returned no id"
        assert [job.status for job in info.store.training_jobs.values()] == ["failed"]
        assert fakes.spawn.names == []

    async def test_cancel_then_restart_leaves_old_run_out(self, runtime, fakes, tenant, monkeypatch):
        info, handle = tenant
        _seed(info.store, info.user.id, 10)
        stamps = iter([1000.0, 2000.0])
        monkeypatch.setattr(training_module, "time", SimpleNamespace(time=lambda: next(stamps)))

        first = await runtime.training.start(info.user, handle)
        runtime.training.cancel(runtime.store.get_user(info.user.id))
        second = await runtime.training.start(runtime.store.get_user(info.user.id), handle)
        fakes.platform.job_runs[first["runId"]] = {"id": first["runId"], "status": "succeeded"}

        _, old_monitor = fakes.spawn.spawned[0]
        assert await old_monitor == CANCELLED

        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "training"
        assert user.adapter_version == second["adapterVersion"]
        assert user.last_trained_at is None
        old_job = info.store.get_training_job(first["trainingId"])
        assert old_job.status == "cancelled"
        assert old_job.error_message == SUPERSEDED_MESSAGE
        assert info.store.get_training_job(second["trainingId"]).status == "running"

    def test_check_can_start_preconditions(self, runtime, make_user):
        no_project, _ = make_user()
        with pytest.raises(ValidationError, match="Project not found"):
            runtime.training.check_can_start(no_project)

        no_schema, _ = make_user(project_id="proj-x")
        with pytest.raises(ValidationError, match="Database not initialized"):
            runtime.training.check_can_start(no_schema)

        busy, _ = make_user(project_id="proj-y", postgres_schema_initialized=True, training_status="training")
        with pytest.raises(ConflictError):
            runtime.training.check_can_start(busy)


class TestTrainingMonitor:
    def _monitor(self, runtime, fakes, info, clock, **overrides):
        info.store.create_training_job(info.user.id, "train-1", "v1", status="running")
        runtime.store.update_user(info.user.id, training_status="training", adapter_version="v1")
        fakes.platform.job_runs["jr-1"] = {"id": "jr-1", "status": "running"}
        kwargs = dict(
            store=runtime.store,
            platform=fakes.platform,
            tenant_store=info.store,
            user_id=info.user.id,
            project_id=info.user.project_id,
            job_id="user-lora-training",
            run_id="jr-1",
            training_id="train-1",
            adapter_version="v1",
            poll_interval=60.0,
            max_wait=600.0,
            clock=clock,
            sleep=clock.sleep,
        )
        kwargs.update(overrides)
        return TrainingMonitor(**kwargs)

    async def test_completed_run_updates_user_and_job(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)

        def finish(count):
            if count == 2:
                fakes.platform.job_runs["jr-1"]["status"] = "succeeded"

        clock.on_sleep = finish

        assert await monitor.run() == COMPLETED

        assert clock.sleeps == [60.0, 60.0]
        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "completed"
        assert user.adapter_version == "v1"
        assert user.last_trained_at is not None
        job = info.store.get_training_job("train-1")
        assert job.status == "completed"
        assert job.completed_at is not None

    async def test_failed_run(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)
        fakes.platform.job_runs["jr-1"]["status"] = "failed"

        assert await monitor.run() == FAILED

        assert runtime.store.get_user(info.user.id).training_error == "Training run failed"
        assert info.store.get_training_job("train-1").status == "failed"

    async def test_times_out_within_budget(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)

        assert await monitor.run() == FAILED

        assert sum(clock.sleeps) <= 600.0
        assert runtime.store.get_user(info.user.id).training_error == "Training did not finish within time limit"

    async def test_cancellation_stops_polling(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)
        clock.on_sleep = lambda count: runtime.store.update_user(info.user.id, training_status="cancelled")

        assert await monitor.run() == CANCELLED

        assert clock.sleeps == [60.0]
        job = info.store.get_training_job("train-1")
        assert job.status == "cancelled"
        assert job.error_message == "Cancelled by user"

    async def test_superseded_run_does_not_touch_tenant(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)

        def restart(count):
            runtime.store.update_user(info.user.id, training_status="training", adapter_version="v2")
            fakes.platform.job_runs["jr-1"]["status"] = "succeeded"

        clock.on_sleep = restart

        assert await monitor.run() == CANCELLED

        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "training"
        assert user.adapter_version == "v2"
        job = info.store.get_training_job("train-1")
        assert job.status == "cancelled"
        assert job.error_message == SUPERSEDED_MESSAGE

    async def test_restart_during_poll_is_detected_before_writing(self, runtime, fakes, ready_tenant):
        info = ready_tenant()
        clock = FakeClock()
        monitor = self._monitor(runtime, fakes, info, clock)
        fakes.platform.job_runs["jr-1"]["status"] = "failed"
        original = fakes.platform.get_job_run

        async def restarted_while_polling(project_id, job_id, run_id):
            runtime.store.update_user(info.user.id, adapter_version="v2")
            return await original(project_id, job_id, run_id)

        fakes.platform.get_job_run = restarted_while_polling

        assert await monitor.run() == CANCELLED

        user = runtime.store.get_user(info.user.id)
        assert user.training_status == "training"
        assert user.training_error is None
        assert info.store.get_training_job("train-1").error_message == SUPERSEDED_MESSAGE


class TestStatusAndCancel:
    def test_status_defaults_without_tenant(self, runtime, make_user):
        user, _ = make_user()

        status = runtime.training.status(user, None)

        assert status["status"] == "idle"
        assert status["stats"]["total"] == 0
        assert status["profile"] is None

    def test_status_with_tenant_counts_approved(self, runtime, fakes, tenant):
        info, handle = tenant
        _seed(info.store, info.user.id, 3)

        status = runtime.training.status(info.user, handle)

        assert status["stats"]["growth_memory"] == 3
        assert status["stats"]["total"] == 3

    def test_cancel_requires_running_training(self, runtime, make_user):
        idle, _ = make_user()
        with pytest.raises(ValidationError, match="No training in progress"):
            runtime.training.cancel(idle)

        running, _ = make_user(training_status="training")
        assert runtime.training.cancel(running)["success"] is True
        stored = runtime.store.get_user(running.id)
        assert stored.training_status == "cancelled"
        assert stored.training_error == "Cancelled by user"
