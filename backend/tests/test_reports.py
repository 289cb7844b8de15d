"""Tests for the daily close report."""

from datetime import timedelta

import pytest

from kassa.core.errors import PosValidationError
from kassa.db.base import utcnow
from kassa.services.pos.reports import build_daily_close, build_daily_close_pdf, parse_report_date


class TestDailyClose:
    def test_counts_and_totals(self, db_session, make_transaction):
        make_transaction(status="paid", unit_gross_cents=10000, vat_rate=19)
        make_transaction(status="paid", unit_gross_cents=2500, vat_rate=7, qty=2)
        make_transaction(status="refunded", unit_gross_cents=4000)
        make_transaction(status="storno", unit_gross_cents=3000)
        make_transaction(status="payment_pending")
        make_transaction(status="failed")

        report = build_daily_close(db_session, utcnow().date())
        summary = report["summary"]

        assert summary["transactionCount"] == 6
        assert summary["paidCount"] == 2
        assert summary["pendingCount"] == 1
        assert summary["failedCount"] == 1
        assert summary["refundedCount"] == 1
        assert summary["stornoCount"] == 1
        assert summary["grossPaidCents"] == 15000
        assert summary["netPaidCents"] == 8403 + 4673
        assert summary["vatPaidCents"] == 1597 + 327
        assert summary["refundGrossCents"] == 4000
        assert summary["stornoGrossCents"] == 3000

    def test_vat_buckets_cover_all_rates(self, db_session, make_transaction):
        make_transaction(status="paid", unit_gross_cents=10000, vat_rate=19)
        report = build_daily_close(db_session, utcnow().date())
        assert report["vatBuckets"] == [
            {"vatRate": 0, "grossCents": 0, "netCents": 0, "vatCents": 0},
            {"vatRate": 7, "grossCents": 0, "netCents": 0, "vatCents": 0},
            {"vatRate": 19, "grossCents": 10000, "netCents": 8403, "vatCents": 1597},
        ]

    def test_other_days_excluded(self, db_session, make_transaction):
        make_transaction(status="paid", created_at=utcnow() - timedelta(days=2))
        report = build_daily_close(db_session, utcnow().date())
        assert report["summary"]["transactionCount"] == 0
        assert report["range"]["from"].endswith("T00:00:00+00:00")

    def test_pdf_rendering(self, db_session, make_transaction):
        make_transaction(status="paid")
        pdf = build_daily_close_pdf(build_daily_close(db_session, utcnow().date()))
        assert pdf.startswith(b"%PDF")


class TestReportDate:
    def test_valid(self):
        assert parse_report_date("2026-03-01").isoformat() == "2026-03-01"

    @pytest.mark.parametrize("value", [None, "", "01.03.2026", "2026-13-01"])
    def test_invalid(self, value):
        with pytest.raises(PosValidationError) as exc_info:
            parse_report_date(value)
        assert exc_info.value.code == "invalid_date"
