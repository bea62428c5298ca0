import pytest

from exam_observer_scheduler.models import Snapshot

from factories import make_exam, make_head, make_secretary


@pytest.fixture()
def sequential_snapshot():
    """Three back-to-back exams, two heads and two secretaries."""
    exams = [make_exam('E1', '09:00', '10:00'), make_exam('E2', '10:00', '11:00'),
             make_exam('E3', '11:00', '12:00')]
    observers = [make_head('H1'), make_head('H2'), make_secretary('S1'), make_secretary('S2')]
    return Snapshot(exams, observers)


@pytest.fixture()
def overlapping_snapshot():
    """Two overlapping exams and a single qualified head."""
    exams = [make_exam('A', '09:00', '11:00'), make_exam('B', '10:00', '12:00')]
    observers = [make_head('H1'), make_secretary('S1'), make_secretary('S2')]
    return Snapshot(exams, observers)
