"""Tests for the report runner and its command line."""

import json
from datetime import datetime, timezone

import pytest

from job_factories import at, make_job, raw_job
from scripts.job_records import normalize_jobs
from scripts.kpi_report import (
    filter_settled_between,
    main,
    parse_date_bound,
    run_engine,
    run_engine_async,
)
from scripts.lib.config import DEFAULT_CONFIG_PATH, build_engine_config
from scripts.lib.errors import MalformedRecordError
from scripts.report_assembler import AR_SECTION, GLOBAL_FUNNEL_SECTION, SUMMARY_SECTION, report_to_json

NOW = datetime(2024, 6, 15, 12, 30, tzinfo=timezone.utc)


class TestParseDateBound:
    def test_unbounded(self):
        assert parse_date_bound("forever", NOW) is None
        assert parse_date_bound(None, NOW) is None
        assert parse_date_bound("", NOW) is None

    def test_ytd(self):
        assert parse_date_bound("ytd", NOW) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_today(self):
        assert parse_date_bound("today", NOW) == NOW

    def test_iso_date(self):
        assert parse_date_bound("2024-03-05", NOW) == datetime(2024, 3, 5, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid date"):
            parse_date_bound("next week", NOW)


class TestFilterSettledBetween:
    @pytest.fixture
    def config(self, config_data):
        config_data["loss"] = {"labels": ["Lost"], "base_milestone": "Appointment"}
        return build_engine_config(config_data)

    @pytest.fixture
    def jobs(self):
        return [
            make_job("installed", [("Lead", 0), ("Installed", 12)]),
            make_job("lost", [("Lead", 0), ("Lost", 20)]),
            make_job("open", [("Lead", 0), ("Pending Payments", 14)]),
            make_job("installed-then-lost", [("Lead", 0), ("Installed", 3), ("Lost", 18)]),
        ]

    def test_only_settled_jobs_in_window(self, jobs, config):
        kept = filter_settled_between(jobs, config, at(10), at(25))
        assert [job.id for job in kept] == ["installed", "lost"]

    def test_settle_date_is_the_earlier_of_install_and_loss(self, jobs, config):
        kept = filter_settled_between(jobs, config, date_to=at(5))
        assert [job.id for job in kept] == ["installed-then-lost"]

    def test_open_ended(self, jobs, config):
        assert [job.id for job in filter_settled_between(jobs, config, date_from=at(15))] == ["lost"]
        assert len(filter_settled_between(jobs, config)) == 3

    def test_loss_needs_a_rule(self, jobs, engine_config):
        kept = filter_settled_between(jobs, engine_config, at(10), at(25))
        assert [job.id for job in kept] == ["installed"]

    def test_export_window(self, raw_jobs, engine_config):
        jobs = normalize_jobs(raw_jobs, engine_config)
        assert [job.id for job in filter_settled_between(jobs, engine_config, at(10), at(25))] == ["j3"]


class TestRunEngine:
    def test_full_report(self, raw_jobs, engine_config):
        report = run_engine(raw_jobs, engine_config)
        assert report.sections[SUMMARY_SECTION].rows[0]["job_count"] == 4
        assert report.sections[GLOBAL_FUNNEL_SECTION].rows[0]["entered_count"] == 4

    def test_window_limits_funnel_not_ar(self, raw_jobs, engine_config):
        report = run_engine(raw_jobs, engine_config, date_from=at(10), date_to=at(25))
        assert report.sections[GLOBAL_FUNNEL_SECTION].title == "Funnel: Global (1 jobs)"
        assert sum(row["job_count"] for row in report.sections[AR_SECTION].rows) == 4

    def test_malformed_record_aborts(self, raw_jobs, engine_config):
        raw_jobs[2] = {"jnid": "j3", "status_history": []}
        with pytest.raises(MalformedRecordError) as exc:
            run_engine(raw_jobs, engine_config)
        assert exc.value.record_id == "j3"

    def test_idempotent(self, raw_jobs, engine_config):
        first = report_to_json(run_engine(raw_jobs, engine_config))
        second = report_to_json(run_engine(raw_jobs, engine_config))
        assert first == second

    @pytest.mark.asyncio
    async def test_async_entry_point(self, raw_jobs, engine_config):
        report = await run_engine_async(raw_jobs, engine_config, as_of=at(31))
        assert report.as_of == at(31)
        assert report.sections[AR_SECTION].rows[0]["status"] == "Pending Payments"


class TestCommandLine:
    @pytest.fixture
    def export_file(self, tmp_path, raw_jobs):
        path = tmp_path / "jobs.json"
        path.write_text(json.dumps({"count": len(raw_jobs), "results": raw_jobs}), encoding="utf-8")
        return path

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "kpi.yaml"
        path.write_text(
            "milestones:\n"
            "  - name: Lead\n"
            "    labels: [Lead]\n"
            "  - name: Appointment\n"
            "    labels: [Appointment Scheduled]\n"
            "ar_status_order: [Pending Payments]\n",
            encoding="utf-8",
        )
        return path

    def test_writes_report_file(self, tmp_path, export_file, config_file):
        output = tmp_path / "out" / "report.json"
        code = main(["--input", str(export_file), "--config", str(config_file), "--output", str(output)])
        assert code == 0
        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["sections"]["global funnel"]["rows"][0]["conversion_rate"] == 0.5
        assert data["sections"]["AR by status"]["rows"][0]["status"] == "Pending Payments"

    def test_stdout_output(self, export_file, config_file, capsys):
        code = main(["-i", str(export_file), "-c", str(config_file), "-o", "-"])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert list(data["sections"])[0] == "summary"

    def test_shipped_config(self, tmp_path, export_file):
        output = tmp_path / "report.json"
        assert main(["-i", str(export_file), "-c", str(DEFAULT_CONFIG_PATH), "-o", str(output)]) == 0
        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["sections"]["global funnel"]["rows"][0]["from_milestone"] == "Lead Acquired"

    def test_flat_export_with_shipped_config(self, tmp_path, flat_jobs):
        path = tmp_path / "flat.json"
        path.write_text(json.dumps({"count": len(flat_jobs), "results": flat_jobs}), encoding="utf-8")
        output = tmp_path / "report.json"
        assert main(["-i", str(path), "-c", str(DEFAULT_CONFIG_PATH), "-o", str(output)]) == 0
        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["sections"]["summary"]["rows"][0]["warning_count"] == 0
        assert [row["status"] for row in data["sections"]["AR by status"]["rows"]][:2] == [
            "Pending Payments", "Collections",
        ]

    def test_malformed_record_exits_nonzero(self, tmp_path, config_file):
        path = tmp_path / "jobs.json"
        path.write_text(json.dumps([raw_job("ok", [("Lead", 0)]), {"jnid": "broken"}]), encoding="utf-8")
        output = tmp_path / "report.json"
        assert main(["-i", str(path), "-c", str(config_file), "-o", str(output)]) == 1
        assert not output.exists()

    def test_missing_input_exits_nonzero(self, tmp_path, config_file):
        assert main(["-i", str(tmp_path / "none.json"), "-c", str(config_file), "-o", "-"]) == 1

    def test_bad_date_is_a_usage_error(self, export_file, config_file):
        with pytest.raises(SystemExit) as exc:
            main(["-i", str(export_file), "-c", str(config_file), "--from", "someday"])
        assert exc.value.code == 2
