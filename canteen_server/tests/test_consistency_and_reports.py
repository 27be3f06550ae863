"""
一致性检查与报表测试
"""

from datetime import timedelta

import pytest

from ..core.exceptions import ForbiddenError
from ..services import ConsistencyService, ReportService
from ..services.sweeper import run_sweeps
from .conftest import MENU_DATE, counters


@pytest.fixture
def consistency_service(test_db):
    return ConsistencyService(test_db)


@pytest.fixture
def report_service(test_db):
    return ReportService(test_db)


class TestConsistency:

    def test_healthy_state(self, consistency_service, place, pay, student, other_student, admin):
        pay(student, place(student))
        place(other_student, slot_index=1)

        result = consistency_service.check_data_consistency(admin)

        assert result["summary"]["status"] == "healthy"
        assert result["issues"] == []
        assert result["statistics"]["reservations"]["waiting"] == 1
        assert result["statistics"]["reservations"]["pending_payment"] == 1
        assert result["statistics"]["payments"]["paid"] == 1

    def test_counter_drift_detected_and_fixed(self, test_db, consistency_service, place, menu_item,
                                              student, admin):
        reservation = place(student)
        test_db.execute_query(
            "UPDATE slot_counters SET reserved_count = 3 WHERE time_slot_id = ?", [reservation.time_slot_id]
        )

        result = consistency_service.check_data_consistency(admin)
        assert [i["type"] for i in result["issues"]] == ["slot_counter_drift"]
        assert result["issues"][0]["details"]["counter"] == 3
        assert result["issues"][0]["details"]["reservations"] == 1

        fixed = consistency_service.fix_capacity_counters(admin)
        assert fixed["slot_counters_fixed"] == 1
        assert counters(test_db, menu_item.id, reservation.time_slot_id) == (1, 1)
        assert consistency_service.check_data_consistency(admin)["summary"]["status"] == "healthy"

    def test_review_payments_reported_as_warnings(self, test_db, consistency_service, place, payment_service,
                                                  student, admin):
        reservation = place(student)
        started = payment_service.request_payment(reservation.id, student.id, reservation.price, "https://cb")
        test_db.execute_query("UPDATE payments SET needs_review = TRUE WHERE id = ?", [started["payment_id"]])

        result = consistency_service.check_data_consistency(admin)
        assert [w["type"] for w in result["warnings"]] == ["payment_needs_review"]
        assert consistency_service.check_data_consistency(admin, include_warnings=False)["warnings"] == []

    def test_requires_admin(self, consistency_service, chef):
        with pytest.raises(ForbiddenError):
            consistency_service.check_data_consistency(chef)


class TestReports:

    def test_reservation_logs(self, report_service, place, student, admin):
        reservation = place(student)
        logs = report_service.reservation_logs(admin)
        assert logs[0]["action"] == "reservation_create"
        assert logs[0]["reservation_id"] == reservation.id
        assert logs[0]["user"] == "张三"
        assert logs[0]["food"] == "Kabab"

    def test_daily_counts(self, report_service, make_menu_item, place, student, other_student, admin):
        tomorrow = make_menu_item(menu_date=MENU_DATE + timedelta(days=1))
        place(student)
        place(other_student)
        place(student, item=tomorrow)

        counts = report_service.daily_counts(admin)
        assert [(r["date"], r["count"]) for r in counts] == [
            (MENU_DATE, 2), (MENU_DATE + timedelta(days=1), 1),
        ]
        assert len(report_service.daily_counts(admin, start=MENU_DATE + timedelta(days=1))) == 1

    def test_reports_require_admin(self, report_service, student):
        with pytest.raises(ForbiddenError):
            report_service.reservation_logs(student)


class TestSweeper:

    def test_run_sweeps(self, test_db, gateway, place, student):
        place(student)
        result = run_sweeps(test_db, gateway)
        assert result == {"reconciled": {"resolved": [], "unresolved": []}, "expired": [], "no_shows": []}
