import base64
import io
from datetime import datetime

import pytest
import pytz
from PIL import Image

from attendance_service.attendance import AttendanceService, current_day, truncate_device_id
from attendance_service.exceptions import BackendError, InvalidEmbeddingError
from attendance_service.models import RecognitionStatus

from conftest import TODAY, StubRecognizer, fixed_clock, vector


def png_base64():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 180, 160)).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


@pytest.fixture
def service(backend, recognizer):
    return AttendanceService(backend, recognizer, clock=fixed_clock())


def test_match_marks_present_then_already_marked(backend, service):
    alice = backend.add_student("Alice", vector(0.2))

    first = service.recognize_and_mark(vector(0.0), device_id="kiosk-1")
    second = service.recognize_and_mark(vector(0.0), device_id="kiosk-1")

    assert first.status == RecognitionStatus.SUCCESS
    assert first.student_id == alice.id
    assert first.class_name == "Class A"
    assert first.distance == pytest.approx(0.2)
    assert second.status == RecognitionStatus.ALREADY_MARKED
    assert len(backend.attendance) == 1
    assert backend.insert_calls == 1
    record = next(iter(backend.attendance.values()))
    assert record.status == "present"
    assert record.date == TODAY
    assert record.device_id == "kiosk-1"


def test_mark_attendance_twice_keeps_one_row(backend, service):
    bob = backend.add_student("Bob", vector(0.1))

    assert service.mark_attendance(bob).status == RecognitionStatus.SUCCESS
    assert service.mark_attendance(bob).status == RecognitionStatus.ALREADY_MARKED
    assert len(backend.attendance) == 1


def test_duplicate_on_insert_is_already_marked(backend, service):
    carol = backend.add_student("Carol", vector(0.1))
    service.mark_attendance(carol)
    backend.hide_existing = True

    outcome = service.mark_attendance(carol)

    assert outcome.status == RecognitionStatus.ALREADY_MARKED
    assert backend.insert_calls == 2
    assert len(backend.attendance) == 1


def test_next_day_is_a_new_record(backend, recognizer):
    dave = backend.add_student("Dave", vector(0.1))
    AttendanceService(backend, recognizer, clock=fixed_clock("2026-10-19")).mark_attendance(dave)
    outcome = AttendanceService(backend, recognizer, clock=fixed_clock("2026-10-20")).mark_attendance(dave)

    assert outcome.status == RecognitionStatus.SUCCESS
    assert len(backend.attendance) == 2


def test_no_students_with_embeddings(backend, service):
    backend.add_student("No Face")

    result = service.recognize_and_mark(vector(0.0))

    assert result.status == RecognitionStatus.NO_MATCH
    assert backend.insert_calls == 0


def test_no_match_writes_nothing(backend, service):
    backend.add_student("Far", vector(0.8))

    result = service.recognize_and_mark(vector(0.0))

    assert result.status == RecognitionStatus.NO_MATCH
    assert backend.attendance == {}


def test_reads_students_on_every_attempt(backend, service):
    backend.add_student("Eve", vector(0.9))
    service.recognize_and_mark(vector(0.0))
    backend.add_student("Frank", vector(0.1))

    result = service.recognize_and_mark(vector(0.0))

    assert result.student_name == "Frank"
    assert backend.list_students_calls == 2


def test_malformed_stored_embedding_does_not_abort_scan(backend, service):
    backend.add_student("Broken", raw_embedding="[not json")
    grace = backend.add_student("Grace", vector(0.3))

    result = service.recognize_and_mark(vector(0.0))

    assert result.status == RecognitionStatus.SUCCESS
    assert result.student_id == grace.id


def test_wrong_dimension_query_is_rejected(service):
    with pytest.raises(InvalidEmbeddingError):
        service.recognize_and_mark([0.0, 0.0])


def test_image_without_face(backend):
    backend.add_student("Heidi", vector(0.1))
    service = AttendanceService(backend, StubRecognizer(next_embedding=None), clock=fixed_clock())

    result = service.process(png_base64(), None)

    assert result.status == RecognitionStatus.NO_FACE
    assert backend.attendance == {}


def test_undecodable_image_is_no_face(backend, service):
    assert service.process("!!!not-base64!!!", None).status == RecognitionStatus.NO_FACE


def test_image_with_face_marks_attendance(backend):
    ivan = backend.add_student("Ivan", vector(0.05))
    service = AttendanceService(backend, StubRecognizer(next_embedding=vector(0.0)), clock=fixed_clock())

    result = service.process(png_base64(), None, device_id="x" * 80)

    assert result.status == RecognitionStatus.SUCCESS
    assert result.student_id == ivan.id
    assert len(next(iter(backend.attendance.values())).device_id) == 50


def test_backend_failure_is_error_result(backend, service):
    backend.add_student("Judy", vector(0.1))
    backend.fail_with = BackendError("Failed fetching students")

    result = service.process(None, vector(0.0))

    assert result.status == RecognitionStatus.ERROR
    assert backend.attendance == {}


def test_current_day_uses_configured_timezone():
    moment = datetime(2026, 10, 19, 23, 30, tzinfo=pytz.utc)

    assert current_day(moment, "UTC") == ("2026-10-19", "23:30:00")
    assert current_day(moment, "Asia/Kolkata") == ("2026-10-20", "05:00:00")


def test_truncate_device_id():
    assert truncate_device_id(None) is None
    assert truncate_device_id("abc") == "abc"
    assert len(truncate_device_id("u" * 100)) == 50
