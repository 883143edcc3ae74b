"""Tests for record validation and wire format."""

from datetime import datetime, timezone

import pytest

from laundry.errors import CorruptRecordError
from laundry.models import Job, JobStatus, load_job

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def row(**overrides):
    base = {
        "id": 1,
        "customer_name": "Alice",
        "address": "1 Main St",
        "notes": "",
        "price_cents": 1500,
        "status": "pending",
        "washer_id": None,
        "payment_reference": None,
        "created_at": NOW,
    }
    base.update(overrides)
    return base


class TestLoadJob:
    def test_valid_rows(self):
        assert load_job(row()).status == JobStatus.PENDING
        assert load_job(row(status="accepted", washer_id="W1")).washer_id == "W1"
        paid = load_job(row(status="paid", washer_id="W1", payment_reference="pi_1"))
        assert paid.payment_reference == "pi_1"
        assert load_job(row(status="cancelled", washer_id="W1")).status == JobStatus.CANCELLED

    def test_missing_field_is_corrupt(self):
        record = row()
        del record["price_cents"]
        with pytest.raises(CorruptRecordError, match="(?i)price"):
            load_job(record)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": "archived"},
            {"price_cents": -5},
            {"status": "pending", "washer_id": "W1"},
            {"status": "accepted"},
            {"status": "paid", "washer_id": "W1"},
            {"status": "accepted", "washer_id": "W1", "payment_reference": "pi_1"},
        ],
    )
    def test_inconsistent_rows_are_corrupt(self, overrides):
        with pytest.raises(CorruptRecordError):
            load_job(row(**overrides))


class TestWireFormat:
    def test_job_serializes_camel_case(self):
        job = load_job(row(status="accepted", washer_id="W1"))
        data = job.model_dump(mode="json", by_alias=True)

        assert data["customerName"] == "Alice"
        assert data["priceCents"] == 1500
        assert data["washerId"] == "W1"
        assert data["paymentReference"] is None
        assert data["status"] == "accepted"

    def test_job_is_immutable(self):
        job = load_job(row())
        with pytest.raises(Exception):
            job.status = JobStatus.ACCEPTED

    def test_job_accepts_camel_case_input(self):
        job = Job.model_validate(
            {
                "id": 2,
                "customerName": "Bob",
                "address": "2 Main St",
                "notes": "",
                "priceCents": 1500,
                "status": "pending",
                "washerId": None,
                "paymentReference": None,
                "createdAt": NOW.isoformat(),
            }
        )
        assert job.customer_name == "Bob"
