from datetime import date

from dateutil.relativedelta import relativedelta

from conftest import events_named
from models import db, Utente, Assessment, AuditLog


def test_assessment_moves_utente_to_doctor_queue(app, login_as, make_utente, socket_for):
    utente_id = make_utente()
    nurse = login_as('nurse')
    doctor_socket = socket_for(login_as('doctor'))

    resp = nurse.post('/api/assessments', json={
        'utente_id': utente_id,
        'color': 'red',
        'observations': 'Chest pain',
        'ecg_done': True,
        'heart_rate': 120,
        'temperature': 37.8,
        'spo2': 93,
        'blood_pressure': '150/95',
    })
    assert resp.status_code == 201

    with app.app_context():
        utente = db.session.get(Utente, utente_id)
        assert utente.status == 'waiting_doctor'
        assert utente.triage_start_at is not None
        assessment = utente.latest_assessment
        assert assessment.color == 'red'
        assert assessment.ecg_done is True
        assert assessment.combur_done is False
        assert assessment.temperature == 37.8
        assert AuditLog.query.filter_by(action='CREATE_ASSESSMENT', target_id=utente_id).one().details == 'Color: red'

    events = events_named(doctor_socket.get_received(), 'assessment_done')
    assert events == [{'message': 'New red case', 'color': 'red', 'utente_id': utente_id, 'alert_sound': True}]


def test_green_assessment_has_no_alert_sound(login_as, make_utente, socket_for):
    utente_id = make_utente()
    nurse = login_as('nurse')
    watcher = socket_for(nurse)

    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'green'}).status_code == 201
    events = events_named(watcher.get_received(), 'assessment_done')
    assert events[0]['alert_sound'] is False


def test_triage_start_is_kept_on_assessment(app, login_as, make_utente):
    utente_id = make_utente(minutes_ago=20, triage_after=5)
    nurse = login_as('nurse')

    with app.app_context():
        started = db.session.get(Utente, utente_id).triage_start_at
    nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'yellow'})
    with app.app_context():
        assert db.session.get(Utente, utente_id).triage_start_at == started


def test_infant_cannot_be_green(app, login_as, make_utente):
    utente_id = make_utente(dob=date.today() - relativedelta(months=2))
    nurse = login_as('nurse')

    resp = nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'green'})
    assert resp.status_code == 400
    assert 'Infants' in resp.get_json()['message']
    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'yellow'}).status_code == 201


def test_three_month_old_can_be_green(login_as, make_utente):
    utente_id = make_utente(dob=date.today() - relativedelta(months=3))
    nurse = login_as('nurse')
    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'green'}).status_code == 201


def test_assessment_validation(app, login_as, make_utente):
    utente_id = make_utente()
    nurse = login_as('nurse')

    assert nurse.post('/api/assessments', json={'utente_id': utente_id}).status_code == 400
    assert nurse.post('/api/assessments', json={'color': 'red'}).status_code == 400
    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'blue'}).status_code == 400
    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'red', 'pain': 11}).status_code == 400
    assert nurse.post('/api/assessments', json={'utente_id': 999, 'color': 'red'}).status_code == 404

    with app.app_context():
        assert Assessment.query.count() == 0


def test_retriage_appends_assessment(app, login_as, make_utente):
    utente_id = make_utente(status='waiting_doctor', color='green', minutes_ago=30)
    nurse = login_as('nurse')

    assert nurse.post('/api/assessments', json={'utente_id': utente_id, 'color': 'red'}).status_code == 201
    with app.app_context():
        utente = db.session.get(Utente, utente_id)
        assert [a.color for a in utente.assessments] == ['green', 'red']
        assert utente.latest_assessment.color == 'red'


def test_reception_cannot_assess(login_as, make_utente):
    utente_id = make_utente()
    desk = login_as('reception')
    assert desk.post('/api/assessments', json={'utente_id': utente_id, 'color': 'red'}).status_code == 403
