"""
Staff directory and attendance: codes, validation, soft delete and the
compensation summary built from attended days.
"""

from datetime import date

import pytest
from channelops.errors import ErrorKind
from channelops.extensions import db
from channelops.models import Channel, ChannelAttendance, Staff
from channelops.services import channel_service, sale_service, staff_service
from channelops.services.sale_service import CartLine

from conftest import BARCODE_TEE_M


@pytest.fixture
def staffed(activate_channel, staff):
    """(channel_id, nok_id, beam_id): active event, Nok main, Beam on a commission override."""
    nok_id, beam_id = staff[0].id, staff[1].id
    staff_service.update_staff(nok_id, daily_rate_cents=50000, commission_cents=2000).unwrap()
    staff_service.update_staff(beam_id, daily_rate_cents=40000, commission_cents=3000).unwrap()

    channel_id = activate_channel({BARCODE_TEE_M: 10})
    channel_service.assign_staff(channel_id, [
        {"staff_id": nok_id, "is_main": True},
        {"staff_id": beam_id, "commission_override_cents": 1000},
    ]).unwrap()
    return channel_id, nok_id, beam_id


class TestDirectory:
    def test_codes_follow_a_sequence(self, db_session):
        first = staff_service.create_staff(name="Ploy", daily_rate_cents=80000).unwrap()
        second = staff_service.create_staff(name=" Fern ", role="Supervisor", phone=" 081-234-5678 ").unwrap()
        assert (first.code, second.code) == ("S0001", "S0002")
        assert (second.name, second.role, second.phone) == ("Fern", "Supervisor", "081-234-5678")
        assert first.is_active

    @pytest.mark.parametrize("fields", [
        {"name": "  "},
        {"name": "Ploy", "role": ""},
        {"name": "Ploy", "daily_rate_cents": -1},
        {"name": "Ploy", "commission_cents": "500"},
        {"name": "Ploy", "salary": 100},
    ])
    def test_create_validates_fields(self, db_session, fields):
        result = staff_service.create_staff(**fields)
        assert result.kind == ErrorKind.INVALID_INPUT
        assert db.session.query(Staff).count() == 0

    def test_update_changes_only_given_fields(self, staff):
        nok_id = staff[0].id
        updated = staff_service.update_staff(nok_id, phone="089-000-1111", commission_cents=5000).unwrap()
        assert (updated.name, updated.phone, updated.commission_cents) == ("Nok", "089-000-1111", 5000)

        assert staff_service.update_staff(nok_id, name="").kind == ErrorKind.INVALID_INPUT
        assert staff_service.update_staff(424242, name="Ghost").kind == ErrorKind.NOT_FOUND

    def test_deactivated_staff_cannot_be_assigned(self, staff, draft_channel):
        beam_id = staff[1].id
        staff_service.deactivate_staff(beam_id).unwrap()
        assert db.session.get(Staff, beam_id).is_active is False
        assert [s.name for s in staff_service.list_staff()] == ["Nok"]
        assert [s.name for s in staff_service.list_staff(include_inactive=True)] == ["Beam", "Former", "Nok"]

        result = channel_service.assign_staff(draft_channel.id, [{"staff_id": beam_id, "is_main": True}])
        assert result.kind == ErrorKind.NOT_FOUND


class TestAttendance:
    def test_duplicate_day_is_refused(self, staffed):
        channel_id, nok_id, _ = staffed
        staff_service.record_attendance(channel_id, nok_id, "2026-11-01", actor="pc").unwrap()

        again = staff_service.record_attendance(channel_id, nok_id, date(2026, 11, 1))
        assert again.kind == ErrorKind.GUARD_FAILED
        assert staff_service.days_worked(channel_id) == {nok_id: 1}

    def test_only_assigned_staff(self, staffed, staff):
        result = staff_service.record_attendance(staffed[0], staff[2].id, "2026-11-01")
        assert result.kind == ErrorKind.NOT_FOUND

    def test_day_must_fall_within_channel_dates(self, staffed):
        channel_id, nok_id, _ = staffed
        channel = db.session.get(Channel, channel_id)
        channel.start_date, channel.end_date = date(2026, 11, 1), date(2026, 11, 7)
        db.session.commit()

        assert staff_service.record_attendance(channel_id, nok_id, "2026-11-08").kind == ErrorKind.INVALID_INPUT
        assert staff_service.record_attendance(channel_id, nok_id, "not-a-date").kind == ErrorKind.INVALID_INPUT
        assert staff_service.record_attendance(channel_id, nok_id, "2026-11-07").is_success

    def test_not_before_selling_starts(self, staff, draft_channel):
        nok_id = staff[0].id
        channel_id = draft_channel.id
        channel_service.assign_staff(channel_id, [{"staff_id": nok_id, "is_main": True}]).unwrap()

        result = staff_service.record_attendance(channel_id, nok_id, "2026-11-01")
        assert result.kind == ErrorKind.GUARD_FAILED

    def test_locked_once_payment_submitted(self, staffed):
        channel_id, nok_id, _ = staffed
        channel_service.submit_payment(channel_id).unwrap()

        result = staff_service.record_attendance(channel_id, nok_id, "2026-11-02")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert db.session.query(ChannelAttendance).count() == 0


class TestCompensationSummary:
    def test_pay_from_attended_days(self, staffed):
        channel_id, nok_id, beam_id = staffed
        for day in ("2026-11-01", "2026-11-02", "2026-11-03"):
            staff_service.record_attendance(channel_id, nok_id, day).unwrap()
        staff_service.record_attendance(channel_id, beam_id, "2026-11-02").unwrap()

        sale_service.create_sale(channel_id=channel_id, items=[CartLine(BARCODE_TEE_M, 2, 29900)]).unwrap()
        void = sale_service.create_sale(channel_id=channel_id, items=[CartLine(BARCODE_TEE_M, 1, 29900)]).unwrap().id
        sale_service.cancel_sale(void, "Void").unwrap()
        channel_service.add_expense(channel_id, category="Booth", amount_cents=500000).unwrap()

        summary = channel_service.channel_compensation_summary(channel_id)
        assert summary["total_sales_cents"] == 59800
        assert summary["expense_total_cents"] == 500000

        rows = {r["staff_id"]: r for r in summary["staff"]}
        nok = rows[nok_id]
        assert (nok["days_worked"], nok["wage_cents"], nok["commission_rate_cents"], nok["commission_cents"]) == (
            3, 150000, 2000, 6000,
        )
        assert nok["total_pay_cents"] == 156000
        assert nok["is_main"] is True

        # The assignment's override replaces Beam's own 3000
        beam = rows[beam_id]
        assert (beam["days_worked"], beam["commission_rate_cents"], beam["total_pay_cents"]) == (1, 1000, 41000)
        assert summary["total_staff_cost_cents"] == 197000

    def test_no_attendance_means_no_pay(self, staffed):
        summary = channel_service.channel_compensation_summary(staffed[0])
        assert [r["total_pay_cents"] for r in summary["staff"]] == [0, 0]
        assert summary["total_staff_cost_cents"] == 0

    def test_unknown_channel(self, db_session):
        assert channel_service.channel_compensation_summary(424242) is None

    def test_override_must_be_non_negative(self, staffed):
        channel_id, nok_id, _ = staffed
        result = channel_service.assign_staff(
            channel_id,
            [{"staff_id": nok_id, "is_main": True, "commission_override_cents": -5}],
        )
        assert result.kind == ErrorKind.INVALID_INPUT
        assert len(channel_service.get_channel(channel_id).staff_assignments) == 2
