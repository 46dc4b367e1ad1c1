from datetime import timedelta

import pytest

from extensions import db
from src.models import Appointment
from src.services import redis_service
from src.services.appointment_state import complete_appointment
from src.services.errors import AdmissionError
from src.services.video_service import (
    can_join, admission_reason, start_call, join_call, leave_call, end_call, get_session,
)

from conftest import at, book, confirm


@pytest.fixture
def video_appt(app, doctor, patient, monday):
    appt = book(doctor, patient, at(monday, "09:30"))
    return confirm(appt.id)


def test_join_window_edges(video_appt):
    start = video_appt.appointment_date
    assert can_join(video_appt, start - timedelta(minutes=9), "patient") is True
    assert can_join(video_appt, start - timedelta(minutes=10), "patient") is True
    assert can_join(video_appt, start - timedelta(minutes=11), "patient") is False
    assert admission_reason(video_appt, start - timedelta(minutes=11), "patient") == "too-early"
    assert can_join(video_appt, start + timedelta(minutes=30), "patient") is True
    assert admission_reason(video_appt, start + timedelta(minutes=31), "patient") == "too-late"


def test_unconfirmed_or_non_video_is_refused(app, doctor, patient, monday):
    scheduled = book(doctor, patient, at(monday, "10:00"))
    assert admission_reason(scheduled, scheduled.appointment_date, "patient") == "not-confirmed"

    phone = confirm(book(doctor, patient, at(monday, "10:30"), consultation_type="phone").id)
    assert admission_reason(phone, phone.appointment_date, "doctor") == "not-video"


def test_start_call_is_idempotent(app, video_appt):
    now = video_appt.appointment_date - timedelta(minutes=5)

    first = start_call(video_appt.id, "doctor", "doc-1", now=now)
    second = start_call(video_appt.id, "doctor", "doc-1", now=now + timedelta(minutes=1))

    assert first.state == "active"
    assert first.id == second.id
    assert db.session.get(Appointment, video_appt.id).call_started_at == now


def test_only_the_doctor_hosts(app, video_appt):
    with pytest.raises(AdmissionError) as exc:
        start_call(video_appt.id, "patient", now=video_appt.appointment_date)
    assert exc.value.reason == "not-host"


def test_start_outside_window_reports_reason(app, video_appt):
    with pytest.raises(AdmissionError) as exc:
        start_call(video_appt.id, "doctor", now=video_appt.appointment_date - timedelta(minutes=11))
    assert exc.value.reason == "too-early"
    assert exc.value.to_dict()["opensAt"].endswith("Z")


def test_patient_join_and_leave_keep_session_active(app, video_appt):
    now = video_appt.appointment_date
    with pytest.raises(AdmissionError) as exc:
        join_call(video_appt.id, "patient", "pat-1", now=now)
    assert exc.value.reason == "no-active-session"

    session = start_call(video_appt.id, "doctor", "doc-1", now=now)
    joined = join_call(video_appt.id, "patient", "pat-1", now=now + timedelta(minutes=1))
    assert joined.id == session.id
    assert joined.participants == ["doc-1", "pat-1"]

    after_leave = leave_call(video_appt.id, "pat-1")
    assert after_leave.state == "active"
    assert after_leave.participants == ["doc-1"]


def test_end_call_is_host_only_and_does_not_complete(app, video_appt, sink):
    now = video_appt.appointment_date
    session = start_call(video_appt.id, "doctor", "doc-1", now=now)

    with pytest.raises(AdmissionError) as exc:
        end_call(video_appt.id, "patient", now=now)
    assert exc.value.reason == "not-host"

    ended = end_call(video_appt.id, "doctor", now=now + timedelta(minutes=25))
    assert ended.id == session.id
    assert ended.state == "ended"

    row = db.session.get(Appointment, video_appt.id)
    assert row.status == "confirmed"
    assert row.call_ended_at == now + timedelta(minutes=25)
    assert sink.events[-1]["kind"] == "video_call_ended"
    assert get_session(video_appt.id).state == "ended"

    with pytest.raises(AdmissionError) as exc:
        end_call(video_appt.id, "doctor", now=now)
    assert exc.value.reason == "no-active-session"


def test_new_call_after_end_gets_new_session(app, video_appt):
    now = video_appt.appointment_date
    first = start_call(video_appt.id, "doctor", now=now)
    end_call(video_appt.id, "doctor", now=now)
    second = start_call(video_appt.id, "doctor", now=now + timedelta(minutes=2))
    assert second.id != first.id


def test_completion_ends_active_session(app, video_appt):
    start_call(video_appt.id, "doctor", now=video_appt.appointment_date)
    complete_appointment(video_appt.id)

    assert redis_service.load_active_session(video_appt.id) is None
    assert get_session(video_appt.id).state == "ended"


def test_session_expires_after_max_duration(app, video_appt):
    start_call(video_appt.id, "doctor", now=video_appt.appointment_date)
    ttl = redis_service.r.ttl(f"video_session:{video_appt.id}:active")
    assert 0 < ttl <= app.config["VIDEO_MAX_DURATION_MINUTES"] * 60


def test_not_started_placeholder(app, video_appt):
    session = get_session(video_appt.id)
    assert session.state == "not-started"
    assert session.id is None
