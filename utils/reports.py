# utils/reports.py
import logging
import os
from datetime import date, datetime, timedelta

from flask import render_template

from models import db, Assessment, AuditLog, Utente
from utils.triage import COLOR_ORDER

logger = logging.getLogger(__name__)


def utente_report(utente):
    """Utente with every assessment and its audit trail, oldest first."""
    audit_logs = AuditLog.query.filter_by(
        target_type='utente', target_id=utente.id
    ).order_by(AuditLog.timestamp.asc(), AuditLog.id.asc()).all()

    data = utente.to_dict()
    data['assessments'] = [a.to_dict(include_nurse=True) for a in utente.assessments]
    return {'utente': data, 'audit_logs': [log.to_dict() for log in audit_logs]}


def pre_assessment_end(audit_logs):
    for log in audit_logs:
        if log['action'] == 'UPDATE_STATUS' and 'in_consultation' in (log['details'] or ''):
            return log['timestamp']
    return None


def format_vitals(assessment):
    parts = []
    if assessment.get('blood_pressure'):
        parts.append(f"BP {assessment['blood_pressure']} mmHg")
    units = [
        ('heart_rate', 'HR {} bpm'),
        ('temperature', 'T {} °C'),
        ('respiratory_rate', 'RR {} /min'),
        ('spo2', 'SpO2 {}%'),
        ('glucose', 'Gluc {} mg/dL'),
        ('pain', 'Pain {}/10'),
    ]
    for key, template in units:
        if assessment.get(key) is not None:
            parts.append(template.format(assessment[key]))
    if assessment.get('ecg_done'):
        parts.append('ECG')
    if assessment.get('combur_done'):
        parts.append('COMBUR')
    if assessment.get('waiting_room'):
        parts.append(f"Room: {assessment['waiting_room']}")
    return ' · '.join(parts)


def render_utente_report_html(report, clinic_name=''):
    return render_template(
        'reports/utente_report.html',
        report=report,
        utente=report['utente'],
        clinic_name=clinic_name,
        pre_assessment_end=pre_assessment_end(report['audit_logs']),
        format_vitals=format_vitals,
        generated_at=datetime.now(),
    )


def utente_report_pdf(report, clinic_name=''):
    from weasyprint import HTML
    html = render_utente_report_html(report, clinic_name)
    return HTML(string=html).write_pdf()


def daily_summary(day):
    start = datetime.combine(day, datetime.min.time())
    end = start + timedelta(days=1)
    arrivals = Utente.query.filter(Utente.arrival_time >= start, Utente.arrival_time < end)

    colors = dict(
        db.session.query(Assessment.color, db.func.count(Assessment.id))
        .filter(Assessment.created_at >= start, Assessment.created_at < end)
        .group_by(Assessment.color)
        .all()
    )
    return {
        'day': day,
        'arrivals': arrivals.count(),
        'closed': arrivals.filter(Utente.status == 'closed').count(),
        'cancelled': arrivals.filter(Utente.status == 'cancelled').count(),
        'by_color': [(color, colors.get(color, 0)) for color in COLOR_ORDER],
    }


def generate_daily_report(report_dir='reports', day=None):
    day = day or date.today()
    summary = daily_summary(day)
    html = render_template('reports/daily_report.html', summary=summary)
    from weasyprint import HTML
    pdf = HTML(string=html).write_pdf()

    os.makedirs(report_dir, exist_ok=True)
    path = os.path.join(report_dir, f"daily_report_{day}.pdf")
    with open(path, "wb") as f:
        f.write(pdf)
    logger.info(f"Daily report written: {path}")
    return path
