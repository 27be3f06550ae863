"""
信用分测试
"""

import pytest

from ..config.settings import settings
from ..core.exceptions import (
    ForbiddenError, NotFoundError, TrustScoreBlockedError, ValidationError,
)


def set_score(db, user_id, score):
    db.execute_query("UPDATE users SET trust_score = ? WHERE id = ?", [score, user_id])


class TestTrustScore:

    def test_new_student_starts_with_initial_score(self, trust_service, student):
        result = trust_service.get_trust_score(student.id)
        assert result["trust_score"] == settings.initial_trust_score
        assert result["blocked"] is False
        assert result["events"] == []

    def test_negative_score_blocks_ordering(self, test_db, place, student):
        set_score(test_db, student.id, -5)
        with pytest.raises(TrustScoreBlockedError) as exc_info:
            place(student)
        assert exc_info.value.details["trust_score"] == -5

    def test_zero_score_can_still_order(self, test_db, place, student):
        set_score(test_db, student.id, 0)
        assert place(student).status == "pending_payment"

    def test_recovery_unblocks(self, test_db, place, trust_service, student, admin):
        set_score(test_db, student.id, -5)
        result = trust_service.recover(student.id, 5, "manual review", admin)
        assert result == {"student_id": student.id, "trust_score": 0, "blocked": False}
        assert place(student).status == "pending_payment"

    def test_recovery_is_recorded(self, trust_service, student, admin):
        trust_service.recover(student.id, 3, "  appeal accepted ", admin)
        events = trust_service.get_trust_score(student.id)["events"]
        assert len(events) == 1
        assert events[0]["kind"] == "recovery"
        assert events[0]["points"] == 3
        assert events[0]["reason"] == "appeal accepted"
        assert events[0]["actor_id"] == admin.id

    def test_penalty_event_linked_to_reservation(self, ready_reservation, reservation_service,
                                                 trust_service, receiver, student):
        reservation_service.mark_not_picked_up(ready_reservation.id, receiver)
        events = trust_service.get_trust_score(student.id)["events"]
        assert [(e["kind"], e["reservation_id"]) for e in events] == [("penalty", ready_reservation.id)]


class TestRecoveryValidation:

    def test_only_admin(self, trust_service, student, chef):
        with pytest.raises(ForbiddenError):
            trust_service.recover(student.id, 5, "reason", chef)

    @pytest.mark.parametrize("points", [0, -3])
    def test_points_must_be_positive(self, trust_service, student, admin, points):
        with pytest.raises(ValidationError):
            trust_service.recover(student.id, points, "reason", admin)

    def test_reason_required(self, trust_service, student, admin):
        with pytest.raises(ValidationError):
            trust_service.recover(student.id, 5, "   ", admin)

    def test_unknown_student(self, trust_service, admin):
        with pytest.raises(NotFoundError):
            trust_service.recover(9999, 5, "reason", admin)
