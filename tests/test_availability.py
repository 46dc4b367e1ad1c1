from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
import pytz

from src.services.availability_service import (
    compute_available_slots, get_available_slots, set_template, get_template, slot_start_utc, day_of_week,
)
from src.services.errors import NotFoundError, ValidationError

from conftest import at, book, MONDAY


def entry(dow, start, end, available=True):
    return SimpleNamespace(day_of_week=dow, start_time=start, end_time=end, is_available=available)


MONDAY_DATE = date(2030, 1, 7)  # a Monday


def starts(slots):
    return [s.startTime for s in slots]


def test_day_of_week_is_sunday_based():
    assert day_of_week(MONDAY_DATE) == 1
    assert day_of_week(MONDAY_DATE - timedelta(days=1)) == 0
    assert day_of_week(MONDAY_DATE + timedelta(days=5)) == 6


def test_monday_template_yields_four_slots():
    slots = compute_available_slots([entry(MONDAY, "09:00", "11:00")], [], MONDAY_DATE)
    assert starts(slots) == ["09:00", "09:30", "10:00", "10:30"]
    assert slots[-1].endTime == "11:00"
    assert slots[0].date == "2030-01-07"


def test_last_slot_must_fit_before_end():
    slots = compute_available_slots([entry(MONDAY, "09:00", "10:45")], [], MONDAY_DATE)
    assert starts(slots) == ["09:00", "09:30", "10:00"]


def test_missing_or_unavailable_day_returns_empty():
    assert compute_available_slots([entry(2, "09:00", "11:00")], [], MONDAY_DATE) == []
    assert compute_available_slots([entry(MONDAY, "09:00", "11:00", available=False)], [], MONDAY_DATE) == []
    assert compute_available_slots([], [], MONDAY_DATE) == []


def test_booked_slot_is_removed():
    booked = [(at(MONDAY_DATE, "09:30"), 30)]
    slots = compute_available_slots([entry(MONDAY, "09:00", "11:00")], booked, MONDAY_DATE)
    assert starts(slots) == ["09:00", "10:00", "10:30"]


def test_past_dates_are_not_filtered():
    past_monday = date(2001, 1, 1)
    slots = compute_available_slots([entry(MONDAY, "09:00", "10:00")], [], past_monday)
    assert starts(slots) == ["09:00", "09:30"]


def test_no_returned_slot_overlaps_a_booking():
    template = [entry(MONDAY, "08:00", "17:00")]
    booked = [(at(MONDAY_DATE, t), 30) for t in ("08:00", "09:30", "12:00", "16:30")]
    # An off-grid booking still blocks both slots it touches.
    booked.append((at(MONDAY_DATE, "13:15"), 30))
    for slot in compute_available_slots(template, booked, MONDAY_DATE):
        s = at(MONDAY_DATE, slot.startTime)
        e = s + timedelta(minutes=30)
        for b_start, duration in booked:
            assert not (s < b_start + timedelta(minutes=duration) and b_start < e)


def test_clinic_timezone_maps_local_slots_to_utc():
    tz = pytz.timezone("Asia/Karachi")  # UTC+5
    assert slot_start_utc(MONDAY_DATE, "09:00", tz) == datetime(2030, 1, 7, 4, 0)

    booked = [(datetime(2030, 1, 7, 4, 30), 30)]  # 09:30 local
    slots = compute_available_slots([entry(MONDAY, "09:00", "11:00")], booked, MONDAY_DATE, tz=tz)
    assert starts(slots) == ["09:00", "10:00", "10:30"]


def test_get_available_slots_reads_bookings(app, doctor, patient, monday):
    assert starts(get_available_slots(doctor.id, monday)) == ["09:00", "09:30", "10:00", "10:30"]

    book(doctor, patient, at(monday, "09:30"))

    assert starts(get_available_slots(doctor.id, monday)) == ["09:00", "10:00", "10:30"]


def test_cancelled_booking_frees_the_slot(app, doctor, patient, monday):
    from src.services.appointment_state import cancel_appointment

    appt = book(doctor, patient, at(monday, "09:30"))
    cancel_appointment(appt.id, actor_role="patient")

    assert "09:30" in starts(get_available_slots(doctor.id, monday))


def test_unknown_doctor_is_not_found(app):
    with pytest.raises(NotFoundError):
        get_available_slots(999, MONDAY_DATE)


def test_set_template_replaces_entries(app, doctor):
    saved = set_template(doctor.id, [
        {"dayOfWeek": 3, "startTime": "14:00", "endTime": "16:00"},
        {"dayOfWeek": 1, "startTime": "08:00", "endTime": "09:00", "isAvailable": False},
    ])
    assert [e["dayOfWeek"] for e in saved] == [1, 3]
    assert get_template(doctor.id)[1] == {
        "dayOfWeek": 3, "startTime": "14:00", "endTime": "16:00", "isAvailable": True,
    }


@pytest.mark.parametrize("entries, field", [
    ([{"dayOfWeek": 1, "startTime": "11:00", "endTime": "09:00"}], "availability[0].startTime"),
    ([{"dayOfWeek": 7, "startTime": "09:00", "endTime": "10:00"}], "availability[0].dayOfWeek"),
    ([{"dayOfWeek": 1, "startTime": "9am", "endTime": "10:00"}], "availability[0].startTime"),
    ([{"dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"}] * 2, "availability"),
    ([{"dayOfWeek": d % 7, "startTime": "09:00", "endTime": "10:00"} for d in range(8)], "availability"),
])
def test_set_template_rejects_invalid(app, doctor, entries, field):
    with pytest.raises(ValidationError) as exc:
        set_template(doctor.id, entries)
    assert exc.value.field == field
