from flask import Flask, request, jsonify, session, send_file
from markupsafe import Markup, escape
from datetime import datetime, date, timedelta, timezone
from functools import wraps
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import io, logging, os

import click
from dateutil import parser as date_parser
from dotenv import load_dotenv
from flask_caching import Cache
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from flask_migrate import Migrate
from flask_socketio import SocketIO, join_room, emit
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from sqlalchemy import or_
from werkzeug.datastructures import ImmutableMultiDict
from werkzeug.security import generate_password_hash, check_password_hash
from wtforms import StringField, PasswordField, BooleanField, SelectField, TextAreaField, IntegerField, FloatField, DateField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from models import (
    db, utcnow, ROLES, COLORS,
    User, Utente, Assessment, AuditLog, ChatMessage, ChatThreadState, SystemSetting
)
from utils.chat import ALL, user_room, role_room, delivery_rooms, messages_for, threads_for
from utils.reports import utente_report, utente_report_pdf
from utils.triage import (
    age_in_years, age_in_months, is_alert_color,
    sort_doctor_queue, average_service_minutes, estimate_waits, wait_stats
)

# ===========================
# LOAD ENV + APP SETUP
# ===========================
load_dotenv()

app = Flask(__name__)

instance_path = Path("instance")
instance_path.mkdir(exist_ok=True)

session_hours = int(os.getenv('SESSION_HOURS', '8'))

app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv(
    'DATABASE_URL',
    f"sqlite:///{(instance_path / 'walkflow.db').resolve()}"
).replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=session_hours)
app.config['REMEMBER_COOKIE_DURATION'] = timedelta(hours=session_hours)
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
app.config['WTF_CSRF_ENABLED'] = os.getenv('WTF_CSRF_ENABLED', 'true').lower() == 'true'
app.config['WTF_CSRF_TIME_LIMIT'] = session_hours * 3600

# Queue and wait-time arithmetic
app.config['WAIT_SAMPLE_SIZE'] = int(os.getenv('WAIT_SAMPLE_SIZE', '50'))
app.config['DEFAULT_SERVICE_MINUTES'] = int(os.getenv('DEFAULT_SERVICE_MINUTES', '10'))
app.config['MIN_SERVICE_MINUTES'] = int(os.getenv('MIN_SERVICE_MINUTES', '5'))
app.config['WAIT_STAFF_ROLE'] = os.getenv('WAIT_STAFF_ROLE', 'nurse')
app.config['RECENT_HOURS'] = int(os.getenv('RECENT_HOURS', '6'))

# Maintenance
app.config['LOG_DIR'] = os.getenv('LOG_DIR', 'logs')
app.config['BACKUP_DIR'] = os.getenv('BACKUP_DIR', 'backups')
app.config['REPORT_DIR'] = os.getenv('REPORT_DIR', 'reports')
app.config['ENABLE_SCHEDULER'] = os.getenv('ENABLE_SCHEDULER', 'false').lower() == 'true'

db.init_app(app)
migrate = Migrate(app, db)

# ===========================
# EXTENSIONS
# ===========================
csrf = CSRFProtect(app)
cache = Cache(app, config={'CACHE_TYPE': 'SimpleCache', 'CACHE_DEFAULT_TIMEOUT': 300})
login_manager = LoginManager()
login_manager.init_app(app)

socketio_options = {'async_mode': 'threading'}
socketio_cors = (os.getenv('SOCKETIO_CORS_ALLOWED_ORIGINS') or '').strip()
if socketio_cors:
    if socketio_cors == '*':
        socketio_options['cors_allowed_origins'] = '*'
    else:
        socketio_options['cors_allowed_origins'] = [
            origin.strip() for origin in socketio_cors.split(',') if origin.strip()
        ]
socketio = SocketIO(app, **socketio_options)

# ===========================
# LOGGING & FILTERS
# ===========================
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if app.config['LOG_DIR']:
    os.makedirs(app.config['LOG_DIR'], exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        os.path.join(app.config['LOG_DIR'], 'walkflow.log'), when='midnight', backupCount=30
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    logging.getLogger().addHandler(file_handler)


def jinja_strftime(value, format='%H:%M'):
    if not value: return ''
    try:
        dt = datetime.fromisoformat(value) if isinstance(value, str) else value
        return dt.strftime(format)
    except ValueError:
        return value[:16]
app.jinja_env.filters['strftime'] = jinja_strftime


def nl2br_filter(value):
    if not value:
        return ''
    return Markup('<br>\n').join(escape(value).split('\n'))
app.jinja_env.filters['nl2br'] = nl2br_filter

# ===========================
# USER LOADER (Flask-Login + SQLAlchemy)
# ===========================
@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return fail('Not authenticated.', 401)

# ===========================
# HELPERS
# ===========================
CLINICAL_ROLES = ('doctor', 'nurse')
PRIVILEGED_ROLES = ('admin', 'superadmin')
DOCTOR_STATUSES = ['waiting_doctor', 'in_consultation', 'closed']


def fail(message, status=400):
    return jsonify({'success': False, 'message': message}), status


def json_form(form_class):
    """Bind a WTForms form to the JSON body; null values count as missing.

    Scalars are passed as the strings a browser form would send, so
    numbers reach ``StringField`` as text and booleans become ``'y'``/``''``.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    formdata = {}
    for key, value in payload.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        if isinstance(value, bool):
            formdata[key] = 'y' if value else ''
        else:
            formdata[key] = str(value)
    return form_class(formdata=ImmutableMultiDict(formdata))


def form_error(form):
    for name, errors in form.errors.items():
        if errors:
            field = getattr(form, name, None)
            label = field.label.text if field is not None else name
            return f"{label}: {errors[0]}"
    return 'Invalid data.'


def record_audit(action, target_type=None, target_id=None, details=None, user_id=None):
    db.session.add(AuditLog(
        user_id=user_id if user_id is not None else current_user.id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details,
        timestamp=utcnow()
    ))


def broadcast(event, payload):
    socketio.emit(event, payload, to=role_room(ALL))


def can_view_clinical():
    return current_user.role in CLINICAL_ROLES


def parse_timestamp(value):
    dt = date_parser.isoparse(value)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

# ===========================
# DECORATORS
# ===========================
def role_required(*required_roles):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            if current_user.role != 'superadmin' and current_user.role not in required_roles:
                logger.warning(f"{current_user.username} ({current_user.role}) denied {request.path}")
                return fail('Insufficient permissions.', 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

# ===========================
# FORM CLASSES
# ===========================
class LoginForm(FlaskForm):
    username = StringField('Username', validators=[DataRequired()])
    password = PasswordField('Password', validators=[DataRequired()])


class RegisterForm(FlaskForm):
    username = StringField('Username', validators=[DataRequired(), Length(min=3, max=80)])
    password = PasswordField('Password', validators=[DataRequired(), Length(min=6, message='Password must be at least 6 characters')])
    full_name = StringField('Full Name', validators=[DataRequired(), Length(max=200)])
    role = SelectField('Role', choices=[(r, r) for r in ROLES], validators=[DataRequired()])


class ChangePasswordForm(FlaskForm):
    current_password = PasswordField('Current Password', validators=[DataRequired(message='Incomplete data.')])
    new_password = PasswordField('New Password', validators=[DataRequired(message='Incomplete data.'), Length(min=6)])


class ResetPasswordForm(FlaskForm):
    new_password = PasswordField('New Password', validators=[DataRequired(message='Invalid password.'), Length(min=6)])


class UtenteForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(message='Name and process number are required.'), Length(max=200)])
    process_number = StringField('Process Number', validators=[DataRequired(message='Name and process number are required.'), Length(max=50)])
    dob = DateField('Date of Birth', format='%Y-%m-%d', validators=[Optional()])
    age = IntegerField('Age', validators=[Optional(), NumberRange(min=0, max=150)])
    gender = StringField('Gender', validators=[Optional(), Length(max=20)])
    contact = StringField('Contact', validators=[Optional(), Length(max=100)])


class AssessmentForm(FlaskForm):
    utente_id = IntegerField('Utente', validators=[InputRequired(message='Incomplete data.')])
    color = SelectField('Color', choices=[(c, c) for c in COLORS], validators=[InputRequired(message='Incomplete data.')])
    observations = TextAreaField('Observations', validators=[Optional()])
    ecg_done = BooleanField('ECG')
    combur_done = BooleanField('Combur')
    blood_pressure = StringField('Blood Pressure', validators=[Optional(), Length(max=20)])
    waiting_room = StringField('Waiting Room', validators=[Optional(), Length(max=50)])
    heart_rate = IntegerField('Heart Rate', validators=[Optional(), NumberRange(min=0, max=300)])
    temperature = FloatField('Temperature', validators=[Optional(), NumberRange(min=20, max=45)])
    respiratory_rate = IntegerField('Respiratory Rate', validators=[Optional(), NumberRange(min=0, max=100)])
    pain = IntegerField('Pain', validators=[Optional(), NumberRange(min=0, max=10)])
    spo2 = IntegerField('SpO2', validators=[Optional(), NumberRange(min=0, max=100)])
    glucose = IntegerField('Glucose', validators=[Optional(), NumberRange(min=0, max=2000)])


class StatusForm(FlaskForm):
    status = SelectField('Status', choices=[(s, s) for s in DOCTOR_STATUSES], validators=[InputRequired()])

# ===========================
# DATABASE INITIALIZATION
# ===========================
DEMO_USERS = [
    ('admin', 'System Administrator', 'admin'),
    ('reception', 'Front Desk', 'reception'),
    ('nurse1', 'Nurse One', 'nurse'),
    ('doctor1', 'Doctor One', 'doctor'),
    ('waittimes', 'Wait Times Display', 'wait_times'),
    ('root', 'Super Administrator', 'superadmin'),
]


def init_db():
    with app.app_context():
        db.create_all()
        logger.info("Database tables checked/created.")


def seed_users(password):
    created = []
    with app.app_context():
        for username, full_name, role in DEMO_USERS:
            if User.query.filter_by(username=username).first():
                continue
            db.session.add(User(
                username=username,
                full_name=full_name,
                password=generate_password_hash(password),
                role=role,
                active=True
            ))
            created.append(username)
        db.session.commit()
    return created


@app.cli.command('init-db')
def init_db_command():
    """Create all tables."""
    init_db()
    click.echo("Database ready.")


@app.cli.command('seed')
@click.option('--password', default=lambda: os.getenv('SEED_PASSWORD', '123456'), help='Password for the demo accounts.')
def seed_command(password):
    """Create the demo accounts that do not exist yet."""
    init_db()
    created = seed_users(password)
    click.echo(f"Seeded: {', '.join(created) if created else 'nothing new'}")

# --------------------------------------------------------------
# AUTH & USERS
# --------------------------------------------------------------
@app.route('/api/auth/csrf')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/api/auth/login', methods=['POST'])
def login():
    form = json_form(LoginForm)
    if not form.validate():
        return fail(form_error(form), 400)

    user = User.query.filter_by(username=form.username.data.strip()).first()
    if not user or not user.active or not check_password_hash(user.password, form.password.data):
        logger.warning(f"Failed login for '{form.username.data}'")
        return fail('Invalid credentials.', 401)

    session.permanent = True
    login_user(user, remember=True, duration=app.config['REMEMBER_COOKIE_DURATION'])
    logger.info(f"{user.username} ({user.role}) logged in")
    return jsonify({'success': True, 'user': user.summary()})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    if current_user.is_authenticated:
        logger.info(f"{current_user.username} logged out")
    logout_user()
    return jsonify({'success': True, 'message': 'Logged out.'})


@app.route('/api/auth/me')
@login_required
def me():
    return jsonify({'user': current_user.summary()})


@app.route('/api/auth/password', methods=['PATCH'])
@login_required
def change_password():
    form = json_form(ChangePasswordForm)
    if not form.validate():
        return fail(form_error(form), 400)
    if not check_password_hash(current_user.password, form.current_password.data):
        return fail('Current password is invalid.', 400)

    try:
        current_user.password = generate_password_hash(form.new_password.data)
        record_audit('CHANGE_PASSWORD', 'user', current_user.id, 'Changed own password.')
        db.session.commit()
        return jsonify({'success': True, 'message': 'Password updated.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Password change failed: {e}")
        return fail('Failed to update password.', 500)


@app.route('/api/auth/users')
@role_required('admin')
def list_users():
    users = User.query.order_by(User.id.asc()).all()
    return jsonify([u.to_dict() for u in users])


@app.route('/api/auth/directory')
@login_required
def user_directory():
    users = User.query.filter_by(active=True).order_by(User.full_name.asc()).all()
    return jsonify([u.summary() for u in users])


def _can_manage(role):
    return role not in PRIVILEGED_ROLES or current_user.role == 'superadmin'


@app.route('/api/auth/register', methods=['POST'])
@role_required('admin')
def register():
    form = json_form(RegisterForm)
    if not form.validate():
        return fail(form_error(form), 400)
    if not _can_manage(form.role.data):
        return fail('Only a super administrator can create administrators.', 403)

    username = form.username.data.strip()
    if User.query.filter_by(username=username).first():
        return fail('Username already exists.', 400)

    try:
        user = User(
            username=username,
            full_name=form.full_name.data.strip(),
            password=generate_password_hash(form.password.data),
            role=form.role.data,
            active=True
        )
        db.session.add(user)
        db.session.flush()
        record_audit('CREATE_USER', 'user', user.id, f"User {username} created as {user.role}.")
        db.session.commit()
        logger.info(f"{current_user.username} created {user.role}: {username}")
        return jsonify({'success': True, 'message': 'User created.', 'user_id': user.id}), 201
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to create user: {e}")
        return fail('Failed to create user.', 500)


@app.route('/api/auth/users/<int:user_id>/password', methods=['PATCH'])
@role_required('admin')
def reset_password(user_id):
    form = json_form(ResetPasswordForm)
    if not form.validate():
        return fail(form_error(form), 400)

    user = db.session.get(User, user_id)
    if not user:
        return fail('User not found.', 404)
    if not _can_manage(user.role):
        return fail('Only a super administrator can manage administrators.', 403)

    try:
        user.password = generate_password_hash(form.new_password.data)
        record_audit('RESET_PASSWORD', 'user', user.id, 'Password reset by administrator.')
        db.session.commit()
        return jsonify({'success': True, 'message': 'Password updated.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Password reset failed: {e}")
        return fail('Failed to update password.', 500)


@app.route('/api/auth/users/<int:user_id>', methods=['DELETE'])
@role_required('admin')
def deactivate_user(user_id):
    if user_id == current_user.id:
        return fail('You cannot deactivate your own account.', 400)

    user = db.session.get(User, user_id)
    if not user:
        return fail('User not found.', 404)
    if not _can_manage(user.role):
        return fail('Only a super administrator can manage administrators.', 403)

    try:
        user.active = False
        record_audit('DEACTIVATE_USER', 'user', user.id, 'User deactivated.')
        db.session.commit()
        logger.info(f"{current_user.username} deactivated {user.username}")
        return jsonify({'success': True, 'message': 'User deactivated.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Deactivate user error: {e}")
        return fail('Failed to deactivate user.', 500)

# --------------------------------------------------------------
# UTENTES
# --------------------------------------------------------------
@app.route('/api/utentes', methods=['POST'])
@role_required('admin', 'reception')
def create_utente():
    form = json_form(UtenteForm)
    if not form.validate():
        return fail(form_error(form), 400)

    dob = form.dob.data
    age = age_in_years(dob, date.today()) if dob else form.age.data

    try:
        utente = Utente(
            name=form.name.data.strip(),
            process_number=form.process_number.data.strip(),
            dob=dob,
            age=age,
            gender=form.gender.data or None,
            contact=form.contact.data or None,
            status='waiting_triage',
            arrival_time=utcnow()
        )
        db.session.add(utente)
        db.session.flush()
        record_audit('CREATE_UTENTE', 'utente', utente.id, f"Utente {utente.name} created.")
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating utente: {e}")
        return fail('Failed to create utente.', 500)

    broadcast('new_utente', {'message': 'New utente waiting for triage', 'utente_id': utente.id})
    return jsonify(utente.to_dict()), 201


@app.route('/api/utentes/pending')
@role_required('admin', 'nurse')
def pending_utentes():
    utentes = Utente.query.filter_by(status='waiting_triage').order_by(Utente.arrival_time.asc()).all()
    return jsonify([u.to_dict() for u in utentes])


@app.route('/api/utentes/retriage')
@role_required('admin', 'nurse')
def retriage_utentes():
    utentes = Utente.query.filter_by(status='waiting_doctor').order_by(Utente.arrival_time.asc()).all()
    return jsonify([u.to_dict(include_assessment=True) for u in utentes])


@app.route('/api/utentes/doctor')
@role_required('admin', 'doctor')
def doctor_utentes():
    cfg = app.config
    try:
        queue = sort_doctor_queue(Utente.query.filter_by(status='waiting_doctor').all())

        completed = Utente.query.filter(
            Utente.status == 'closed',
            Utente.completed_at.isnot(None)
        ).order_by(Utente.completed_at.desc()).limit(cfg['WAIT_SAMPLE_SIZE']).all()
        avg_service = average_service_minutes(
            completed, cfg['DEFAULT_SERVICE_MINUTES'], cfg['MIN_SERVICE_MINUTES']
        )
        staff_count = User.query.filter_by(role=cfg['WAIT_STAFF_ROLE'], active=True).count()

        result = []
        for utente, individual, estimate in estimate_waits(queue, avg_service, staff_count):
            data = utente.to_dict(include_assessment=True)
            data['individual_wait'] = individual
            data['wait_estimate'] = estimate
            result.append(data)
        return jsonify(result)
    except Exception as e:
        logger.error(f"Doctor queue error: {e}")
        return fail('Failed to load the doctor queue.', 500)


@app.route('/api/utentes/<int:utente_id>/status', methods=['PATCH'])
@role_required('doctor', 'admin')
def update_status(utente_id):
    form = json_form(StatusForm)
    if not form.validate():
        return fail(form_error(form), 400)

    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)

    status = form.status.data
    try:
        utente.status = status
        if status == 'in_consultation':
            utente.doctor_id = current_user.id
        if status == 'closed':
            utente.completed_at = utcnow()
        record_audit('UPDATE_STATUS', 'utente', utente.id, f"New status: {status}")
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Status update failed for utente {utente_id}: {e}")
        return fail('Failed to update status.', 500)

    broadcast('status_update', {'utente_id': utente.id, 'status': status})
    return jsonify(utente.to_dict())


@app.route('/api/utentes/<int:utente_id>/triage-start', methods=['PATCH'])
@role_required('nurse', 'admin')
def start_triage(utente_id):
    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)
    if not utente.triage_start_at:
        try:
            utente.triage_start_at = utcnow()
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Triage start failed for utente {utente_id}: {e}")
            return fail('Failed to start triage.', 500)
    return jsonify({'triage_start_at': utente.triage_start_at.isoformat()})


@app.route('/api/utentes/history')
@role_required('admin', 'doctor', 'reception', 'nurse')
def utente_history():
    query = Utente.query
    search = (request.args.get('search') or '').strip()
    if search:
        query = query.filter(or_(
            Utente.name.ilike(f"%{search}%"),
            Utente.process_number.ilike(f"%{search}%")
        ))

    day = request.args.get('date')
    if day:
        try:
            start = datetime.strptime(day, '%Y-%m-%d')
        except ValueError:
            return fail('Invalid date.', 400)
        query = query.filter(Utente.arrival_time >= start, Utente.arrival_time < start + timedelta(days=1))

    utentes = query.order_by(Utente.arrival_time.desc()).all()
    clinical = can_view_clinical()
    return jsonify([u.to_dict(include_assessment=clinical) for u in utentes])


@app.route('/api/utentes/recent')
@login_required
def recent_utentes():
    since = utcnow() - timedelta(hours=app.config['RECENT_HOURS'])
    utentes = Utente.query.filter(Utente.arrival_time >= since).order_by(Utente.arrival_time.desc()).all()
    clinical = can_view_clinical()
    return jsonify([u.to_dict(include_assessment=clinical) for u in utentes])


@app.route('/api/utentes/stats')
@login_required
def utente_stats():
    try:
        pre_assessment = Utente.query.filter_by(status='waiting_triage').all()
        waiting_doctor = Utente.query.filter_by(status='waiting_doctor').all()
        return jsonify(wait_stats(pre_assessment, waiting_doctor, utcnow()))
    except Exception as e:
        logger.error(f"Wait stats error: {e}")
        return fail('Failed to compute statistics.', 500)


@app.route('/api/utentes/<int:utente_id>/report')
@role_required('doctor', 'nurse')
def utente_report_json(utente_id):
    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)
    return jsonify(utente_report(utente))


@app.route('/api/utentes/<int:utente_id>/report.pdf')
@role_required('doctor', 'nurse')
def utente_report_download(utente_id):
    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)
    try:
        pdf = utente_report_pdf(utente_report(utente), load_public_settings()['clinic_name'])
    except Exception as e:
        logger.error(f"Report generation failed for utente {utente_id}: {e}")
        return fail('Failed to generate report.', 500)
    return send_file(
        io.BytesIO(pdf),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f"utente-report-{utente.process_number or utente.id}.pdf"
    )


@app.route('/api/utentes/<int:utente_id>/cancel', methods=['DELETE'])
@role_required('admin', 'reception')
def cancel_utente(utente_id):
    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)
    try:
        utente.status = 'cancelled'
        record_audit('CANCEL_UTENTE', 'utente', utente.id, 'Utente cancelled.')
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Cancel utente error: {e}")
        return fail('Failed to cancel utente.', 500)

    broadcast('status_update', {'utente_id': utente.id, 'status': 'cancelled'})
    return jsonify({'success': True, 'message': 'Utente cancelled.'})


@app.route('/api/utentes/<int:utente_id>', methods=['DELETE'])
@role_required('admin')
def delete_utente(utente_id):
    utente = db.session.get(Utente, utente_id)
    if not utente:
        return fail('Utente not found.', 404)
    try:
        db.session.delete(utente)
        record_audit('DELETE_UTENTE', 'utente', utente_id, 'Utente deleted.')
        db.session.commit()
        logger.info(f"{current_user.username} deleted utente {utente_id}")
        return jsonify({'success': True, 'message': 'Utente deleted.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete utente error: {e}")
        return fail('Failed to delete utente.', 500)

# --------------------------------------------------------------
# ASSESSMENTS (nurse triage)
# --------------------------------------------------------------
@app.route('/api/assessments', methods=['POST'])
@role_required('nurse', 'admin')
def create_assessment():
    form = json_form(AssessmentForm)
    if not form.validate():
        return fail(form_error(form), 400)

    utente = db.session.get(Utente, form.utente_id.data)
    if not utente:
        return fail('Utente not found.', 404)

    color = form.color.data
    if color == 'green' and utente.dob and age_in_months(utente.dob, date.today()) < 3:
        return fail('Infants under 3 months cannot be classified as green.', 400)

    try:
        now = utcnow()
        db.session.add(Assessment(
            utente_id=utente.id,
            nurse_id=current_user.id,
            color=color,
            observations=form.observations.data or None,
            ecg_done=form.ecg_done.data,
            combur_done=form.combur_done.data,
            blood_pressure=form.blood_pressure.data or None,
            waiting_room=form.waiting_room.data or None,
            heart_rate=form.heart_rate.data,
            temperature=form.temperature.data,
            respiratory_rate=form.respiratory_rate.data,
            pain=form.pain.data,
            spo2=form.spo2.data,
            glucose=form.glucose.data,
            created_at=now
        ))
        utente.status = 'waiting_doctor'
        if not utente.triage_start_at:
            utente.triage_start_at = now
        record_audit('CREATE_ASSESSMENT', 'utente', utente.id, f"Color: {color}")
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error saving assessment: {e}")
        return fail('Failed to save assessment.', 500)

    broadcast('assessment_done', {
        'message': f"New {color} case",
        'color': color,
        'utente_id': utente.id,
        'alert_sound': is_alert_color(color)
    })
    return jsonify({'success': True, 'message': 'Assessment completed.'}), 201

# --------------------------------------------------------------
# AUDIT LOG
# --------------------------------------------------------------
AUDIT_LIMIT = 500
AUDIT_UTENTE_MATCHES = 200


@app.route('/api/audit/logs')
@role_required('admin')
def audit_logs():
    query = AuditLog.query

    user_id = request.args.get('user_id', type=int)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    action = request.args.get('action')
    if action:
        query = query.filter(AuditLog.action == action)

    try:
        start = request.args.get('start')
        if start:
            query = query.filter(AuditLog.timestamp >= parse_timestamp(start))
        end = request.args.get('end')
        if end:
            query = query.filter(AuditLog.timestamp <= parse_timestamp(end))
    except ValueError:
        return fail('Invalid date range.', 400)

    term = (request.args.get('utente') or '').strip()
    if term:
        matches = Utente.query.with_entities(Utente.id).filter(or_(
            Utente.name.ilike(f"%{term}%"),
            Utente.process_number.ilike(f"%{term}%")
        )).limit(AUDIT_UTENTE_MATCHES).all()
        query = query.filter(
            AuditLog.target_type == 'utente',
            AuditLog.target_id.in_([row.id for row in matches])
        )

    logs = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(AUDIT_LIMIT).all()

    target_ids = {log.target_id for log in logs if log.target_type == 'utente' and log.target_id}
    utentes = {}
    if target_ids:
        for u in Utente.query.filter(Utente.id.in_(target_ids)).all():
            utentes[u.id] = {'id': u.id, 'name': u.name, 'process_number': u.process_number}

    result = []
    for log in logs:
        data = log.to_dict()
        data['utente'] = utentes.get(log.target_id) if log.target_type == 'utente' else None
        result.append(data)
    return jsonify(result)

# --------------------------------------------------------------
# CHAT
# --------------------------------------------------------------
def send_chat_message(sender, payload):
    """Store a chat message and push it to its rooms. Returns None for blank text."""
    text = str(payload.get('message') or '').strip()
    if not text:
        return None

    to_user_id = payload.get('to_user_id') or None
    to_role = payload.get('to_role') or None
    if to_user_id is not None:
        try:
            to_user_id = int(to_user_id)
        except (TypeError, ValueError):
            raise ValueError('Invalid recipient.')
        if not db.session.get(User, to_user_id):
            raise ValueError('Recipient not found.')
        to_role = None
    else:
        to_role = to_role or ALL
        if to_role != ALL and to_role not in ROLES:
            raise ValueError('Invalid role.')

    message = ChatMessage(
        from_user_id=sender.id,
        to_role=to_role,
        to_user_id=to_user_id,
        message=text,
        created_at=utcnow()
    )
    db.session.add(message)
    db.session.commit()

    socketio.emit('chat_message', message.to_dict(), to=delivery_rooms(message))
    return message


def _thread_state(thread_key):
    state = ChatThreadState.query.filter_by(user_id=current_user.id, thread_key=thread_key).first()
    if state is None:
        state = ChatThreadState(user_id=current_user.id, thread_key=thread_key, archived=False)
        db.session.add(state)
    return state


@app.route('/api/chat/messages')
@login_required
def chat_messages():
    try:
        return jsonify(messages_for(current_user, request.args.get('thread_key') or None))
    except Exception as e:
        logger.error(f"Chat messages error: {e}")
        return fail('Failed to load messages.', 500)


@app.route('/api/chat/messages', methods=['POST'])
@login_required
def post_chat_message():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    try:
        message = send_chat_message(current_user, payload)
    except ValueError as e:
        return fail(str(e), 400)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Chat send error: {e}")
        return fail('Failed to send message.', 500)
    if message is None:
        return fail('Message is empty.', 400)
    return jsonify(message.to_dict()), 201


@app.route('/api/chat/threads')
@login_required
def chat_threads():
    try:
        return jsonify(threads_for(current_user))
    except Exception as e:
        logger.error(f"Chat threads error: {e}")
        return fail('Failed to load conversations.', 500)


@app.route('/api/chat/threads/<thread_key>/archive', methods=['PATCH'])
@login_required
def archive_chat_thread(thread_key):
    payload = request.get_json(silent=True) or {}
    archived = payload.get('archived') if isinstance(payload, dict) else None
    if not thread_key.strip():
        return fail('Invalid conversation.', 400)
    if not isinstance(archived, bool):
        return fail('Invalid value.', 400)

    try:
        _thread_state(thread_key).archived = archived
        db.session.commit()
        return jsonify({'success': True, 'message': 'Conversation updated.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Archive thread error: {e}")
        return fail('Failed to update conversation.', 500)


@app.route('/api/chat/threads/<thread_key>', methods=['DELETE'])
@login_required
def delete_chat_thread(thread_key):
    if not thread_key.strip():
        return fail('Invalid conversation.', 400)
    try:
        state = _thread_state(thread_key)
        state.deleted_at = utcnow()
        state.archived = False
        db.session.commit()
        return jsonify({'success': True, 'message': 'Conversation deleted.'})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete thread error: {e}")
        return fail('Failed to delete conversation.', 500)

# --------------------------------------------------------------
# SETTINGS
# --------------------------------------------------------------
TEXT_SETTINGS = ['clinic_name', 'clinic_logo', 'alert_sound_url', 'notification_sound_url']
FLAG_SETTINGS = ['show_clinic_logo', 'show_walkflow_logo']
PUBLIC_SETTINGS_KEY = 'public_settings'


def load_public_settings():
    stored = {
        s.key: s.value for s in
        SystemSetting.query.filter(SystemSetting.key.in_(TEXT_SETTINGS + FLAG_SETTINGS)).all()
    }
    settings = {key: stored.get(key) or '' for key in TEXT_SETTINGS}
    for key in FLAG_SETTINGS:
        settings[key] = stored.get(key) != 'false'
    return settings


def save_settings(updates):
    for key, value in updates.items():
        setting = SystemSetting.query.filter_by(key=key).first()
        if setting:
            setting.value = value
        else:
            db.session.add(SystemSetting(key=key, value=value))
    db.session.commit()
    cache.delete(PUBLIC_SETTINGS_KEY)


@app.route('/api/settings/public')
@cache.cached(key_prefix=PUBLIC_SETTINGS_KEY)
def public_settings():
    return jsonify(load_public_settings())


@app.route('/api/settings/clinic-name', methods=['PATCH'])
@role_required('admin')
def update_clinic_name():
    payload = request.get_json(silent=True) or {}
    clinic_name = payload.get('clinic_name') if isinstance(payload, dict) else None
    if not isinstance(clinic_name, str) or not clinic_name.strip():
        return fail('Invalid name.', 400)
    clinic_name = clinic_name.strip()
    try:
        save_settings({'clinic_name': clinic_name})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Clinic name update failed: {e}")
        return fail('Failed to update name.', 500)
    broadcast('settings_updated', {'refresh': True})
    return jsonify({'success': True, 'message': 'Name updated.'})


@app.route('/api/settings', methods=['PATCH'])
@role_required('admin')
def update_settings():
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}

    updates = {}
    for key in TEXT_SETTINGS:
        if isinstance(payload.get(key), str):
            updates[key] = payload[key]
    for key in FLAG_SETTINGS:
        if isinstance(payload.get(key), bool):
            updates[key] = 'true' if payload[key] else 'false'

    try:
        save_settings(updates)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Settings update failed: {e}")
        return fail('Failed to update settings.', 500)
    logger.info(f"{current_user.username} updated settings: {', '.join(updates) or 'none'}")
    broadcast('settings_updated', {'refresh': True})
    return jsonify({'success': True, 'message': 'Settings updated.'})

# --------------------------------------------------------------
# REALTIME (Socket.IO)
# --------------------------------------------------------------
URGENT_DEFAULT = 'IMMEDIATE ATTENTION'


@socketio.on('connect')
def on_connect(auth=None):
    if not current_user.is_authenticated:
        return False
    join_room(user_room(current_user.id))
    join_room(role_room(current_user.role))
    join_room(role_room(ALL))
    logger.info(f"Socket connected: {current_user.username} ({current_user.role}) sid={request.sid}")


@socketio.on('disconnect')
def on_disconnect(reason=None):
    logger.info(f"Socket disconnected: sid={request.sid}")


@socketio.on('chat_message')
def on_chat_message(payload=None):
    if not current_user.is_authenticated:
        return
    try:
        send_chat_message(current_user, payload if isinstance(payload, dict) else {})
    except ValueError as e:
        emit('chat_error', {'message': str(e)})
    except Exception as e:
        db.session.rollback()
        logger.error(f"Chat error: {e}")


@socketio.on('urgent_alert')
def on_urgent_alert(payload=None):
    if not current_user.is_authenticated:
        return
    payload = payload if isinstance(payload, dict) else {}
    socketio.emit('urgent_alert', {
        'message': str(payload.get('message') or URGENT_DEFAULT),
        'from_user_name': payload.get('from_user_name') or current_user.full_name,
    }, to=role_room('doctor'))


@socketio.on('urgent_alert_clear')
def on_urgent_alert_clear(payload=None):
    if not current_user.is_authenticated:
        return
    socketio.emit('urgent_alert_clear', to=role_room('doctor'))

# --------------------------------------------------------------
# HEALTH & ERRORS
# --------------------------------------------------------------
@app.route('/health')
def health():
    try:
        db.session.execute(db.text('SELECT 1'))
        return {"status": "healthy", "db": "ok"}, 200
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "db": "down"}, 500


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    return fail(e.description, 400)


@app.errorhandler(404)
def not_found(e):
    return fail('Not found.', 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return fail('Method not allowed.', 405)


@app.errorhandler(500)
def server_error(e):
    return fail('Server error.', 500)


if __name__ == '__main__':
    init_db()
    if app.config['ENABLE_SCHEDULER']:
        from scheduler import start_scheduler
        start_scheduler(app)
    socketio.run(app, host='0.0.0.0', port=int(os.getenv('PORT', '8000')), debug=False, allow_unsafe_werkzeug=True)
