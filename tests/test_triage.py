from datetime import date, datetime, timedelta
from types import SimpleNamespace

from utils.triage import (
    round_minutes, age_in_months, age_in_years, is_alert_color,
    sort_doctor_queue, average_service_minutes, estimate_waits, wait_stats
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def case(name, color=None, assessed=None, arrival=None, triage_start=None, completed=None):
    latest = SimpleNamespace(color=color, created_at=assessed) if color else None
    return SimpleNamespace(
        name=name,
        latest_assessment=latest,
        arrival_time=arrival or NOW,
        triage_start_at=triage_start,
        completed_at=completed,
    )


def minutes(n):
    return timedelta(minutes=n)


def test_round_minutes_is_half_up():
    assert round_minutes(2.5) == 3
    assert round_minutes(2.49) == 2
    assert round_minutes(0) == 0


def test_queue_orders_by_color_then_assessment_time():
    queue = [
        case('green-early', 'green', NOW - minutes(60)),
        case('yellow-late', 'yellow', NOW - minutes(5)),
        case('red', 'red', NOW - minutes(1)),
        case('yellow-early', 'yellow', NOW - minutes(30)),
    ]
    ordered = [u.name for u in sort_doctor_queue(queue)]
    assert ordered == ['red', 'yellow-early', 'yellow-late', 'green-early']


def test_queue_treats_missing_assessment_as_earliest_green():
    queue = [
        case('green', 'green', NOW - minutes(10)),
        case('unassessed'),
        case('yellow', 'yellow', NOW),
    ]
    assert [u.name for u in sort_doctor_queue(queue)] == ['yellow', 'unassessed', 'green']


def test_average_service_defaults_without_samples():
    assert average_service_minutes([]) == 10
    assert average_service_minutes([case('open', 'red', NOW)]) == 10


def test_average_service_ignores_non_positive_and_applies_floor():
    completed = [
        case('a', 'red', NOW - minutes(2), completed=NOW),
        case('b', 'red', NOW, completed=NOW - minutes(3)),
        case('c', 'green', NOW - minutes(1), completed=NOW),
    ]
    assert average_service_minutes(completed) == 5


def test_average_service_rounds_mean():
    completed = [
        case('a', 'red', NOW - minutes(20), completed=NOW),
        case('b', 'yellow', NOW - minutes(25), completed=NOW),
    ]
    assert average_service_minutes(completed) == 23
    assert average_service_minutes(completed, default=10, minimum=30) == 30


def test_estimate_waits_divides_by_staff_and_counts_empty_staff_as_one():
    queue = [case('a'), case('b'), case('c')]
    assert [w for _, _, w in estimate_waits(queue, 10, 2)] == [0, 5, 10]
    assert [w for _, _, w in estimate_waits(queue, 10, 0)] == [0, 10, 20]
    assert [w for _, _, w in estimate_waits(queue, 7, 3)] == [0, 2, 5]


def test_individual_wait_uses_triage_start():
    started = case('a', arrival=NOW - minutes(40), triage_start=NOW - minutes(28))
    waiting = case('b', arrival=NOW - minutes(40))
    result = estimate_waits([started, waiting], 10, 1)
    assert result[0][1] == 12
    assert result[1][1] is None


def test_wait_stats_by_color():
    pre = [case('p1', arrival=NOW - minutes(10)), case('p2', arrival=NOW - minutes(21))]
    doctor = [
        case('r1', 'red', NOW - minutes(4)),
        case('y1', 'yellow', NOW - minutes(30)),
        case('y2', 'yellow', NOW - minutes(50)),
        case('none'),
    ]
    stats = wait_stats(pre, doctor, NOW)

    assert stats['pre_assessment'] == {'avg_wait': 16, 'count': 2}
    assert stats['doctor']['count'] == 4
    assert stats['doctor']['avg_wait'] == 28
    assert stats['doctor']['by_color'] == [
        {'color': 'red', 'wait': 4, 'count': 1},
        {'color': 'yellow', 'wait': 50, 'count': 2},
        {'color': 'green', 'wait': 0, 'count': 0},
    ]


def test_wait_stats_empty():
    stats = wait_stats([], [], NOW)
    assert stats['pre_assessment'] == {'avg_wait': 0, 'count': 0}
    assert stats['doctor']['avg_wait'] == 0
    assert all(entry['wait'] == 0 for entry in stats['doctor']['by_color'])


def test_age_helpers():
    assert age_in_years(date(2000, 6, 15), date(2026, 6, 14)) == 25
    assert age_in_months(date(2026, 1, 20), date(2026, 3, 19)) == 1
    assert age_in_months(date(2025, 12, 1), date(2026, 3, 1)) == 3


def test_alert_colors():
    assert is_alert_color('red')
    assert is_alert_color('yellow')
    assert not is_alert_color('green')
