import json

import pandas as pd
import pytest

from exam_observer_scheduler import collaborators
from exam_observer_scheduler.__main__ import main
from exam_observer_scheduler.collaborators import (ExcelAssignmentStore, ExcelDataLoader, InMemoryAssignmentStore,
                                                   InMemoryDataLoader, JsonReportMetricsSink)
from exam_observer_scheduler.config import AssignmentOptions
from exam_observer_scheduler.models import Assignment, Availability, BusyInterval, Observer, Snapshot, TimeWindow
from exam_observer_scheduler.router import AlgorithmRouter, build_report
from exam_observer_scheduler.scheduler import SupervisionScheduler
from exam_observer_scheduler.utils import read_snapshot_excel, validate_excel_file, write_snapshot_excel

from factories import MONDAY, hm, make_exam, make_head, make_secretary


@pytest.fixture()
def full_snapshot():
    exams = [make_exam('E1', '09:00', '10:00', schedule_id=7), make_exam('E2', '10:00', '11:30'),
             make_exam('E3', '13:00', '14:00')]
    observers = [
        make_head('H1'),
        make_head('H2', max_assignments=4),
        make_secretary('S1'),
        Observer('P1', name='Part Timer', availability=Availability.PART_TIME,
                 time_windows=(TimeWindow('Monday', hm('08:00'), hm('12:00')),)),
    ]
    busy = [BusyInterval('S1', MONDAY, hm('15:00'), hm('16:00'), 'OLD'),
            BusyInterval('H1', MONDAY, hm('13:00'), hm('14:00'), 'E3')]
    return Snapshot(exams, observers, busy)


@pytest.fixture()
def workbook(tmp_path, full_snapshot):
    path = tmp_path / 'input.xlsx'
    write_snapshot_excel(full_snapshot, str(path))
    return path


def test_in_memory_loader_drops_busy_of_requested_exams(full_snapshot):
    loader = InMemoryDataLoader(full_snapshot.exams, full_snapshot.observers, full_snapshot.busy)
    snapshot = loader.load(['E1', 'E3'])

    assert [e.exam_id for e in snapshot.exams] == ['E1', 'E3']
    assert [b.exam_id for b in snapshot.busy] == ['OLD']


def test_in_memory_store_replaces_only_requested_exams():
    store = InMemoryAssignmentStore()
    store.replace_assignments(['E1', 'E2'], [Assignment('E1', 'H1', 'S1'), Assignment('E2', 'H2', 'S2')])
    store.replace_assignments(['E2'], [])

    assert set(store.assignments) == {'E1'}
    assert store.writes == 2


def test_workbook_is_valid(workbook):
    assert validate_excel_file(str(workbook)) == (True, [])


def test_workbook_round_trip(workbook, full_snapshot):
    snapshot = read_snapshot_excel(str(workbook))

    assert [e.exam_id for e in snapshot.exams] == ['E1', 'E2', 'E3']
    e2 = snapshot.exam('E2')
    assert (e2.date, e2.start, e2.end) == (MONDAY, hm('10:00'), hm('11:30'))
    assert snapshot.exam('E1').schedule_id == 7
    assert snapshot.exam('E2').schedule_id is None

    part_timer = snapshot.observer('P1')
    assert part_timer.availability == Availability.PART_TIME
    assert part_timer.time_windows == (TimeWindow('Monday', hm('08:00'), hm('12:00')),)
    assert snapshot.observer('H2').max_assignments == 4
    assert snapshot.observer('H1').title == 'Dr.'
    assert len(snapshot.busy) == 2


def test_reading_requested_exams_drops_their_busy_rows(workbook):
    snapshot = ExcelDataLoader(str(workbook)).load(['E3'])
    assert [e.exam_id for e in snapshot.exams] == ['E3']
    assert [b.exam_id for b in snapshot.busy] == ['OLD']


def test_missing_sheet_is_reported(tmp_path):
    path = tmp_path / 'partial.xlsx'
    with pd.ExcelWriter(path, engine='openpyxl') as writer:
        pd.DataFrame({'Exam Id': [1]}).to_excel(writer, sheet_name='Exams', index=False)

    valid, errors = validate_excel_file(str(path))
    assert not valid
    assert any('Missing required sheets' in error for error in errors)
    assert any('Exams sheet missing columns' in error for error in errors)


def test_missing_file_is_reported(tmp_path):
    valid, errors = validate_excel_file(str(tmp_path / 'nope.xlsx'))
    assert not valid
    assert errors[0].startswith('File not found')


def test_excel_store_keeps_other_exams(tmp_path):
    store = ExcelAssignmentStore(str(tmp_path / 'assignments.xlsx'))
    store.replace_assignments(['E1', 'E2'], [Assignment('E1', 'H1', 'S1', 7), Assignment('E2', 'H2', 'S2')])
    store.replace_assignments(['E2'], [Assignment('E2', 'H1', 'S2')])

    rows = store.read().to_dict('records')
    assert sorted(row['Exam Id'] for row in rows) == ['E1', 'E2']
    e2 = next(row for row in rows if row['Exam Id'] == 'E2')
    assert e2['Head Id'] == 'H1'
    assert not (tmp_path / 'assignments.tmp.xlsx').exists()


def test_excel_store_removes_temp_file_when_save_fails(tmp_path, monkeypatch):
    store = ExcelAssignmentStore(str(tmp_path / 'assignments.xlsx'))
    store.replace_assignments(['E1'], [Assignment('E1', 'H1', 'S1')])

    def refuse(src, dst):
        raise OSError('read-only target')

    monkeypatch.setattr(collaborators.os, 'replace', refuse)
    with pytest.raises(OSError):
        store.replace_assignments(['E1'], [Assignment('E1', 'H2', 'S2')])

    assert not (tmp_path / 'assignments.tmp.xlsx').exists()
    assert store.read().to_dict('records')[0]['Head Id'] == 'H1'


def test_json_metrics_sink_writes_report_and_summary(tmp_path, full_snapshot):
    result = AlgorithmRouter(AssignmentOptions(algorithm='greedy')).run(full_snapshot)
    sink = JsonReportMetricsSink(str(tmp_path / 'reports'))
    sink.record(build_report(result, ['E1', 'E2', 'E3']))
    sink.record(build_report(result, ['E1', 'E2', 'E3']))

    report = json.loads(sink.last_report.read_text(encoding='utf-8'))
    assert report['stats']['algorithm'] == 'greedy-optimized'
    assert sink.last_report.name.startswith('performance-report-')
    lines = (tmp_path / 'reports' / 'performance-summary.jsonl').read_text(encoding='utf-8').splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])['total_exams'] == 3


def test_scheduler_end_to_end(workbook, tmp_path, capsys):
    scheduler = SupervisionScheduler(AssignmentOptions(algorithm='greedy'))
    scheduler.read_supervision_file(str(workbook))
    summary = scheduler.summarize_supervision_info()
    assert summary['total_exams'] == 3
    assert summary['qualified_heads'] == 2
    assert summary['part_time'] == 1

    assert scheduler.schedule() is True
    scheduler.print_solution()
    output = tmp_path / 'schedule.xlsx'
    scheduler.write_solution_to_file(str(output))

    schedule = pd.read_excel(output, sheet_name='Schedule')
    workload = pd.read_excel(output, sheet_name='Workload')
    assert list(schedule['Status']) == ['assigned'] * 3
    assert workload['Total'].sum() == 6
    assert 'FAIRNESS ANALYSIS' in capsys.readouterr().out


def test_command_line(workbook, tmp_path):
    output = tmp_path / 'out.xlsx'
    metrics = tmp_path / 'metrics'
    main([str(workbook), '-o', str(output), '-a', 'greedy', '-q', '--metrics-dir', str(metrics)])

    assert output.exists()
    assert (metrics / 'performance-summary.jsonl').exists()


def test_command_line_validate_only(workbook):
    with pytest.raises(SystemExit) as exc:
        main([str(workbook), '--validate-only'])
    assert exc.value.code == 0


def test_command_line_rejects_bad_options(workbook):
    with pytest.raises(SystemExit) as exc:
        main([str(workbook), '--population-size', '10'])
    assert exc.value.code == 2
