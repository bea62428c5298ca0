from exam_observer_scheduler.config import AssignmentOptions
from exam_observer_scheduler.models import Availability, BusyInterval, Gene, Observer, Snapshot, TimeWindow
from exam_observer_scheduler.validation import EXISTING, ValidationEngine

from factories import MONDAY, hm, make_exam, make_head, make_secretary


def planted_snapshot(busy=()):
    exams = [make_exam('A', '09:00', '11:00'), make_exam('B', '10:00', '12:00'),
             make_exam('C', '14:00', '15:00')]
    observers = [make_head('X'), make_head('Z'), make_secretary('Y'), make_secretary('W')]
    return Snapshot(exams, observers, busy)


def test_planted_overlap_is_reported_once():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot).validate([Gene('A', 'X', 'Y'), Gene('B', 'Z', 'X')])

    assert report.complete
    assert len(report.overlaps) == 1
    overlap = report.overlaps[0]
    assert overlap.observer_id == 'X'
    assert set(overlap.exam_ids) == {'A', 'B'}
    assert (overlap.first_role, overlap.second_role) == ('head', 'secretary')
    assert overlap.first_time == '09:00-11:00'
    assert report.role_violations == []
    assert report.offending_exam_ids() == {'B'}


def test_clean_assignment_has_no_violations():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot).validate(
        [Gene('A', 'X', 'Y'), Gene('B', 'Z', 'W'), Gene('C', 'X', 'Y')])
    assert report.total_violations == 0
    assert report.is_valid(snapshot.exam_count)


def test_role_violations():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot).validate([
        Gene('A', 'Y', 'W'),
        Gene('B', 'Z', 'Z'),
        Gene('C', 'Q', 'W'),
    ])
    issues = {(v.exam_id, v.issue) for v in report.role_violations}
    assert ('A', 'Non-doctor assigned as head') in issues
    assert ('B', 'Same observer holds both roles') in issues
    assert ('C', 'Unknown observer') in issues
    # Z also overlaps with itself on B
    assert len(report.overlaps) == 1
    assert report.critical_violations(snapshot.exam_count) == len(report.role_violations) + 1


def test_duplicate_exam_is_reported():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot).validate([Gene('C', 'X', 'Y'), Gene('C', 'Z', 'W')])
    assert report.duplicate_exams == ['C']
    assert 'C' in report.offending_exam_ids()


def test_part_time_window_violation():
    part_timer = Observer('P', availability=Availability.PART_TIME,
                          time_windows=(TimeWindow('Monday', hm('08:00'), hm('12:00')),))
    snapshot = Snapshot([make_exam('C', '14:00', '15:00')], [make_head('X'), part_timer])
    report = ValidationEngine(snapshot).validate([Gene('C', 'X', 'P')])
    assert len(report.timeslot_violations) == 1
    assert report.timeslot_violations[0].observer_id == 'P'


def test_existing_commitments_are_checked():
    busy = [BusyInterval('X', MONDAY, hm('14:30'), hm('15:30'))]
    snapshot = planted_snapshot(busy)
    report = ValidationEngine(snapshot).validate([Gene('C', 'X', 'Y')])

    assert len(report.overlaps) == 1
    assert EXISTING in (report.overlaps[0].first_role, report.overlaps[0].second_role)
    assert report.offending_exam_ids() == {'C'}

    unchecked = ValidationEngine(snapshot, check_existing=False).validate([Gene('C', 'X', 'Y')])
    assert unchecked.overlaps == []


def test_overlapping_existing_commitments_alone_are_ignored():
    busy = [BusyInterval('X', MONDAY, hm('09:00'), hm('10:00')),
            BusyInterval('X', MONDAY, hm('09:30'), hm('10:30'))]
    snapshot = planted_snapshot(busy)
    report = ValidationEngine(snapshot).validate([Gene('C', 'X', 'Y')])
    assert report.overlaps == []


def test_zero_budget_marks_report_incomplete():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot, timeout_ms=0).validate([Gene('A', 'X', 'Y')])
    assert not report.complete
    assert not report.is_valid(snapshot.exam_count)


def test_overlap_tolerance_scales_with_exam_count():
    snapshot = planted_snapshot()
    report = ValidationEngine(snapshot).validate([Gene('A', 'X', 'Y'), Gene('B', 'Z', 'X')])

    assert report.critical_violations(snapshot.exam_count, 0.05) == 1
    assert report.critical_violations(40, 0.05) == 0
    assert report.is_valid(40, 0.05)


def test_summary_breakdown():
    snapshot = planted_snapshot()
    engine = ValidationEngine(snapshot, options=AssignmentOptions(overlap_tolerance=0.5))
    summary = engine.summarize(engine.validate([Gene('A', 'X', 'Y'), Gene('B', 'Z', 'X')]))

    assert summary['total_violations'] == 1
    assert summary['breakdown']['overlaps'] == 1
    assert summary['overlap_threshold'] == 2
    assert summary['critical_violations'] == 0
    assert summary['is_valid'] is True
