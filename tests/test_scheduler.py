from reliance_engine.scheduler import WAL_CHECKPOINT_SECONDS, RelianceScheduler


def test_jobs_are_registered_single_instance(engine):
    scheduler = RelianceScheduler(engine.monitor, engine.queue, liveness_interval_seconds=3600, queue_poll_seconds=900)
    scheduler.start()
    try:
        assert scheduler.running
        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"liveness", "notification-drain", "wal-checkpoint"}
        assert jobs["liveness"].trigger.interval.total_seconds() == 3600
        assert jobs["notification-drain"].trigger.interval.total_seconds() == 900
        assert jobs["wal-checkpoint"].trigger.interval.total_seconds() == WAL_CHECKPOINT_SECONDS
        assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())
    finally:
        scheduler.shutdown()
    assert not scheduler.running


def test_without_queue_only_liveness_runs(engine):
    scheduler = RelianceScheduler(engine.monitor, None, liveness_interval_seconds=3600, queue_poll_seconds=900)
    scheduler.start()
    try:
        assert [job.id for job in scheduler.scheduler.get_jobs()] == ["liveness"]
    finally:
        scheduler.shutdown()
