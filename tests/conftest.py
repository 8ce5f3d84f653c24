"""Shared fixtures for the Roof KPI Hub tests."""

import copy

import pytest

from job_factories import epoch, flat_job
from scripts.lib.config import DEFAULT_CONFIG_PATH, build_engine_config, load_engine_config


CONFIG_DATA = {
    "milestones": [
        {"name": "Lead", "labels": ["Lead", "New Lead"]},
        {"name": "Appointment", "labels": ["Appointment Scheduled"]},
        {"name": "Signed", "labels": ["Signed Contract", "signed"]},
        {"name": "Installed", "labels": ["Installed"]},
    ],
    "ar_status_order": ["Pending Payments", "Job Completed", "Collections"],
    "date_fields": {
        "Signed Contract Date": "Signed Contract",
        "Install Date": "Installed",
    },
    "known_statuses": ["Lost"],
}


@pytest.fixture
def config_data():
    return copy.deepcopy(CONFIG_DATA)


@pytest.fixture
def engine_config(config_data):
    return build_engine_config(config_data)


@pytest.fixture
def milestones(engine_config):
    return engine_config.milestones


@pytest.fixture
def raw_jobs():
    """A small JobNimbus-style export covering two reps and one unassigned job."""
    return [
        {
            "jnid": "j1",
            "number": "1001",
            "name": "Smith Roof",
            "sales_rep_name": "Alice",
            "status_history": [
                {"status": "Lead", "timestamp": epoch(0)},
                {"status": "Appointment Scheduled", "timestamp": epoch(2)},
                {"status": "Signed Contract", "timestamp": epoch(7)},
                {"status": "Pending Payments", "timestamp": epoch(20)},
            ],
            "approved_invoice_due": 1250.50,
        },
        {
            "jnid": "j2",
            "number": "1002",
            "name": "Jones Gutter",
            "sales_rep_name": "Bob",
            "status_history": [
                {"status": "Lead", "timestamp": epoch(1)},
                {"status": "Appointment Scheduled", "timestamp": epoch(5)},
            ],
            "approved_invoice_due": 0,
        },
        {
            "jnid": "j3",
            "number": "1003",
            "name": "Lee Reroof",
            "sales_rep_name": "",
            "status_history": [
                {"status": "Lead", "timestamp": epoch(3)},
            ],
            "Signed Contract Date": epoch(9),
            "Install Date": epoch(15),
            "amount_due": "300.00",
        },
        {
            "jnid": "j4",
            "number": "1004",
            "sales_rep_name": "Alice",
            "status_history": [
                {"status": "Lead", "timestamp": epoch(4)},
                {"status": "Pending Payments", "timestamp": epoch(30)},
            ],
            "amount_due": 99.99,
        },
    ]


@pytest.fixture
def shipped_config():
    return load_engine_config(DEFAULT_CONFIG_PATH)


@pytest.fixture
def flat_jobs():
    """Flat JobNimbus records as the API returns them: no status history list."""
    return [
        flat_job("a", "Lead", 0),
        flat_job(
            "b", "Pending Payments", 20, created=0,
            dates={"Sales Appt #1 Date": 2, "Signed Contract Date": 7, "Install Date": 15},
            approved_invoice_due=500,
        ),
        flat_job(
            "c", "Collections", 40, created=1,
            dates={
                "Sales Appt #1 Date": 3,
                "Signed Contingency Date": 5,
                "Signed Contract Date": 9,
                "Install Date": 20,
            },
            approved_invoice_due=1000,
            **{"Insurance Job?": True, "Insurance Company": "Acme Mutual"},
        ),
        flat_job(
            "d", "Lost", 12, created=2,
            dates={"Sales Appt #1 Date": 4, "Job Lost Date (if applicable)": 12},
        ),
    ]
