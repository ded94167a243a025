import os

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['WTF_CSRF_ENABLED'] = 'false'
os.environ['LOG_DIR'] = ''
os.environ['SECRET_KEY'] = 'test-secret'

from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from app import app as flask_app, cache, socketio
from models import db, utcnow, User, Utente, Assessment

PASSWORD = 'secret123'


@pytest.fixture
def app():
    # No app context stays pushed: each request must get its own `g`.
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.create_all()
        cache.clear()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def make_user(app):
    def _make(username, role, password=PASSWORD, active=True, full_name=None):
        with app.app_context():
            user = User(
                username=username,
                full_name=full_name or username.title(),
                password=generate_password_hash(password),
                role=role,
                active=active
            )
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def login_as(app, make_user):
    """Create a user with ``role`` and return a test client logged in as them."""
    def _login(role, username=None, **kwargs):
        username = username or role
        make_user(username, role, **kwargs)
        client = app.test_client()
        resp = client.post('/api/auth/login', json={'username': username, 'password': PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return client
    return _login


@pytest.fixture
def socket_for(app):
    def _connect(client):
        return socketio.test_client(app, flask_test_client=client)
    return _connect


@pytest.fixture
def make_utente(app):
    def _make(name='Ana Silva', process_number='P001', status='waiting_triage', minutes_ago=0,
              dob=None, triage_after=None, color=None, assessed_minutes_ago=None,
              completed_minutes_ago=None):
        now = utcnow()
        arrival = now - timedelta(minutes=minutes_ago)
        with app.app_context():
            utente = Utente(
                name=name,
                process_number=process_number,
                status=status,
                dob=dob,
                arrival_time=arrival,
                triage_start_at=arrival + timedelta(minutes=triage_after) if triage_after is not None else None,
                completed_at=now - timedelta(minutes=completed_minutes_ago) if completed_minutes_ago is not None else None
            )
            db.session.add(utente)
            db.session.flush()
            if color:
                assessed = now - timedelta(minutes=assessed_minutes_ago if assessed_minutes_ago is not None else minutes_ago)
                db.session.add(Assessment(utente_id=utente.id, color=color, created_at=assessed))
            db.session.commit()
            return utente.id
    return _make


def events_named(received, name):
    return [event['args'][0] if event['args'] else None for event in received if event['name'] == name]
