"""Tests for the APScheduler job wiring."""
import pytest

from dealfinder import scheduler as scheduler_module
from dealfinder.models.flight_deal import FlightDeal
from dealfinder.scheduler import (
    cleanup_job,
    full_deal_run,
    get_scheduler,
    get_scheduler_status,
    last_minute_deal_run,
    process_alerts_job,
    stop_scheduler,
)
from dealfinder.services.deal_evaluator import SearchMode


@pytest.fixture(autouse=True)
def reset_scheduler():
    yield
    stop_scheduler()


class TestJobRegistration:
    def test_jobs_registered(self, runtime):
        instance = get_scheduler(runtime)
        ids = {job.id for job in instance.get_jobs()}
        assert ids == {"full_deal_run", "last_minute_deal_run", "deal_alerts", "deal_cleanup"}

    def test_instance_is_reused(self, runtime):
        assert get_scheduler(runtime) is get_scheduler(runtime)

    def test_stop_resets_instance(self, runtime):
        get_scheduler(runtime)
        stop_scheduler()
        assert scheduler_module.scheduler is None
        assert get_scheduler_status() == {"running": False, "jobs": []}


class TestJobs:
    async def test_full_run_job(self, runtime, fake_provider):
        summary = await full_deal_run(runtime)
        assert summary.mode is SearchMode.FULL
        assert fake_provider.calls
        assert all(call[0] == "route" for call in fake_provider.calls)

    async def test_last_minute_job(self, runtime, fake_provider):
        summary = await last_minute_deal_run(runtime)
        assert summary.mode is SearchMode.LAST_MINUTE
        assert all(call[0] == "origin" for call in fake_provider.calls)

    async def test_alert_and_cleanup_jobs_run_without_data(self, runtime, db_session):
        await process_alerts_job(runtime)
        await cleanup_job(runtime)
        assert db_session.query(FlightDeal).count() == 0
