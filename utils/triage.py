# utils/triage.py
"""Doctor-queue ordering and waiting-time arithmetic.

All functions work on plain ``Utente``/``Assessment`` objects and take the
reference time explicitly, so they can be used outside a request.
"""
from datetime import datetime

from dateutil.relativedelta import relativedelta

COLOR_WEIGHT = {'red': 1, 'yellow': 2, 'green': 3}
COLOR_ORDER = ['red', 'yellow', 'green']
ALERT_COLORS = {'red', 'yellow'}

DEFAULT_SERVICE_MINUTES = 10
MIN_SERVICE_MINUTES = 5


def round_minutes(value):
    """Half-up rounding for minute values (``round`` would give 2 for 2.5)."""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def minutes_between(start, end):
    return (end - start).total_seconds() / 60


def age_in_years(dob, today):
    return relativedelta(today, dob).years


def age_in_months(dob, today):
    delta = relativedelta(today, dob)
    return delta.years * 12 + delta.months


def is_alert_color(color):
    return color in ALERT_COLORS


def queue_sort_key(utente):
    latest = utente.latest_assessment
    color = latest.color if latest and latest.color in COLOR_WEIGHT else 'green'
    assessed_at = latest.created_at if latest else datetime.min
    return COLOR_WEIGHT[color], assessed_at


def sort_doctor_queue(utentes):
    """Red before yellow before green, then oldest assessment first."""
    return sorted(utentes, key=queue_sort_key)


def average_service_minutes(completed, default=DEFAULT_SERVICE_MINUTES, minimum=MIN_SERVICE_MINUTES):
    """Mean minutes from last assessment to completion over ``completed``.

    Samples without an assessment, without ``completed_at`` or with a
    non-positive duration are ignored.
    """
    samples = []
    for utente in completed:
        latest = utente.latest_assessment
        if latest is None or utente.completed_at is None:
            continue
        minutes = minutes_between(latest.created_at, utente.completed_at)
        if minutes > 0:
            samples.append(minutes)
    if not samples:
        return default
    return max(minimum, round_minutes(sum(samples) / len(samples)))


def individual_wait(utente):
    if not utente.triage_start_at:
        return None
    return round_minutes(minutes_between(utente.arrival_time, utente.triage_start_at))


def estimate_waits(queue, avg_service, staff_count):
    """Pair each queued utente with its individual wait and estimate.

    ``queue`` must already be sorted. The estimate for position ``i`` is
    ``i * avg_service / staff_count``, with an empty staff counted as one.
    """
    denominator = staff_count if staff_count > 0 else 1
    return [
        (utente, individual_wait(utente), round_minutes(index * avg_service / denominator))
        for index, utente in enumerate(queue)
    ]


def wait_stats(pre_assessment, waiting_doctor, now):
    """Summary shown on the wait-times screen."""
    pre_waits = [minutes_between(u.arrival_time, now) for u in pre_assessment]
    pre_waits = [m for m in pre_waits if m >= 0]
    pre_avg = round_minutes(sum(pre_waits) / len(pre_waits)) if pre_waits else 0

    longest = dict.fromkeys(COLOR_ORDER, 0.0)
    counts = dict.fromkeys(COLOR_ORDER, 0)
    doctor_waits = []
    for utente in waiting_doctor:
        latest = utente.latest_assessment
        if latest is None or latest.color not in counts:
            continue
        waited = minutes_between(latest.created_at, now)
        longest[latest.color] = max(longest[latest.color], waited)
        counts[latest.color] += 1
        doctor_waits.append(waited)

    by_color = [
        {
            'color': color,
            'wait': round_minutes(longest[color]) if counts[color] else 0,
            'count': counts[color],
        }
        for color in COLOR_ORDER
    ]
    doctor_avg = round_minutes(sum(doctor_waits) / len(doctor_waits)) if doctor_waits else 0

    return {
        'pre_assessment': {'avg_wait': pre_avg, 'count': len(pre_assessment)},
        'doctor': {'avg_wait': doctor_avg, 'count': len(waiting_doctor), 'by_color': by_color},
    }
