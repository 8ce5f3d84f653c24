"""Tests for the accounts-receivable aggregator."""

import random

from job_factories import at, make_job
from scripts.ar_aggregator import ar_job_rows, compute_ar
from scripts.job_records import normalize_jobs


class TestComputeAR:
    def test_zero_amount_buckets_are_kept(self):
        jobs = [
            make_job("1", [("A", 0)], amount_due=0),
            make_job("2", [("A", 0)], amount_due=10000),
            make_job("3", [("B", 0)], amount_due=0),
        ]
        buckets = compute_ar(jobs)
        assert [(b.status, b.job_count, b.total_amount_due) for b in buckets] == [
            ("A", 2, 10000),
            ("B", 1, 0),
        ]
        assert buckets[0].zero_amount_count == 1
        assert buckets[1].zero_amount_count == 1

    def test_buckets_partition_the_jobs(self, raw_jobs, engine_config):
        jobs = normalize_jobs(raw_jobs, engine_config)
        buckets = compute_ar(jobs, engine_config.ar_status_order)
        assert sum(b.job_count for b in buckets) == len(jobs)
        assert sum(b.total_amount_due for b in buckets) == sum(job.amount_due for job in jobs)
        assert len({b.status for b in buckets}) == len(buckets)

    def test_canonical_order_then_first_seen(self, raw_jobs, engine_config):
        jobs = normalize_jobs(raw_jobs, engine_config)
        buckets = compute_ar(jobs, engine_config.ar_status_order)
        assert [(b.status, b.job_count, b.total_amount_due) for b in buckets] == [
            ("Pending Payments", 2, 135049),
            ("Appointment Scheduled", 1, 0),
            ("Installed", 1, 30000),
        ]

    def test_canonical_order_ignores_unobserved_statuses(self):
        jobs = [
            make_job("1", [("Collections", 0)], amount_due=500),
            make_job("2", [("Job Completed", 0)], amount_due=700),
        ]
        buckets = compute_ar(jobs, ["Pending Payments", "Job Completed", "Collections"])
        assert [b.status for b in buckets] == ["Job Completed", "Collections"]

    def test_without_order_uses_first_seen(self):
        jobs = [
            make_job("1", [("Zeta", 0)]),
            make_job("2", [("Alpha", 0)]),
            make_job("3", [("Zeta", 1)]),
        ]
        assert [b.status for b in compute_ar(jobs)] == ["Zeta", "Alpha"]

    def test_sums_are_exact_in_cents(self):
        jobs = [make_job(str(i), [("A", 0)], amount_due=10) for i in range(3)]
        assert compute_ar(jobs)[0].total_amount_due == 30

    def test_uses_current_status_only(self):
        jobs = [make_job("1", [("Pending Payments", 0), ("Collections", 3)], amount_due=100)]
        assert [b.status for b in compute_ar(jobs)] == ["Collections"]

    def test_empty_input(self):
        assert compute_ar([]) == []

    def test_input_order_does_not_change_buckets(self, raw_jobs, engine_config):
        jobs = normalize_jobs(raw_jobs, engine_config) + [
            make_job("x1", [("Zeta", 0)], amount_due=4200),
            make_job("x2", [("Alpha", 0)], amount_due=0),
            make_job("x3", [("Zeta", 2)], amount_due=1),
        ]
        expected = {b.status: (b.job_count, b.zero_amount_count, b.total_amount_due) for b in compute_ar(jobs)}

        for seed in range(5):
            shuffled = list(jobs)
            random.Random(seed).shuffle(shuffled)
            buckets = compute_ar(shuffled, engine_config.ar_status_order)
            assert {b.status: (b.job_count, b.zero_amount_count, b.total_amount_due) for b in buckets} == expected
            assert [b.status for b in buckets][:1] == ["Pending Payments"]

    def test_flat_export_groups_by_jobnimbus_status(self, flat_jobs, shipped_config):
        jobs = normalize_jobs(flat_jobs, shipped_config)
        buckets = compute_ar(jobs, shipped_config.ar_status_order)
        assert [(b.status, b.job_count, b.total_amount_due) for b in buckets] == [
            ("Pending Payments", 1, 50000),
            ("Collections", 1, 100000),
            ("Lead", 1, 0),
            ("Lost", 1, 0),
        ]


class TestARJobRows:
    def test_rows_follow_bucket_order(self, raw_jobs, engine_config):
        jobs = normalize_jobs(raw_jobs, engine_config)
        buckets = compute_ar(jobs, engine_config.ar_status_order)
        rows = ar_job_rows(jobs, buckets, as_of=at(30))

        assert [row["job_id"] for row in rows] == ["j1", "j4", "j2", "j3"]
        assert [row["days_in_status"] for row in rows] == [10.0, 0.0, 25.0, 15.0]
        assert rows[0]["amount_due"] == 1250.5
        assert rows[0]["job_number"] == "1001"
        assert rows[0]["job_name"] == "Smith Roof"
        assert rows[3]["representative"] is None

    def test_days_in_status_rounds_to_tenths(self):
        jobs = [make_job("1", [("A", 0)])]
        rows = ar_job_rows(jobs, compute_ar(jobs), as_of=at(2.26))
        assert rows[0]["days_in_status"] == 2.3
