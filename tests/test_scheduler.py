"""Tests for the daily renewal schedule."""

import random
import re
import threading
from unittest.mock import Mock

import schedule

from edgecert.renewal import RenewalRun, RenewalStatus
from edgecert.scheduler import RenewalScheduler, generate_random_daily_time


def test_random_daily_time_format():
    for seed in range(50):
        value = generate_random_daily_time(random.Random(seed))
        assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", value)
        hour, minute, second = (int(part) for part in value.split(":"))
        assert 0 <= hour < 24
        assert 0 <= minute < 59
        assert 0 <= second < 59


def make_coordinator():
    coordinator = Mock()
    run = RenewalRun(forced=False)
    run.finish(RenewalStatus.SKIPPED, "Did not attempt to renew cert.")
    coordinator.trigger.return_value = run
    return coordinator


def test_registers_one_daily_job():
    scheduler = schedule.Scheduler()

    RenewalScheduler(make_coordinator(), at_time="03:15:42", scheduler=scheduler)

    assert len(scheduler.jobs) == 1
    job = scheduler.jobs[0]
    assert job.unit == "days"
    assert job.interval == 1
    assert job.at_time.strftime("%H:%M:%S") == "03:15:42"


def test_random_time_when_unset():
    renewal_scheduler = RenewalScheduler(make_coordinator(), scheduler=schedule.Scheduler())

    assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", renewal_scheduler.at_time)


def test_job_triggers_scheduled_renewal():
    coordinator = make_coordinator()
    scheduler = schedule.Scheduler()
    RenewalScheduler(coordinator, at_time="03:15:42", scheduler=scheduler)

    scheduler.run_all()

    coordinator.trigger.assert_called_once_with(forced=False)


def test_run_forever_stops():
    coordinator = make_coordinator()
    renewal_scheduler = RenewalScheduler(
        coordinator, at_time="03:15:42", scheduler=schedule.Scheduler()
    )
    stop_event = threading.Event()
    stop_event.set()

    renewal_scheduler.run_forever(stop_event, poll_seconds=0)

    coordinator.trigger.assert_not_called()


def test_forced_request_runs_on_worker_thread():
    coordinator = make_coordinator()
    renewal_scheduler = RenewalScheduler(
        coordinator, at_time="03:15:42", scheduler=schedule.Scheduler()
    )

    worker = renewal_scheduler.request_forced_renewal()
    worker.join(timeout=10)

    assert worker is not threading.current_thread()
    coordinator.trigger.assert_called_once_with(forced=True)
    assert renewal_scheduler.last_forced_run is coordinator.trigger.return_value
