# models.py
# Walkflow - emergency department patient flow
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()

ROLES = ['reception', 'nurse', 'doctor', 'admin', 'wait_times', 'superadmin']
COLORS = ['red', 'yellow', 'green']


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ========================================
# 1. User
# ========================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def get_id(self):
        return str(self.id)

    @property
    def is_active(self):
        return self.active

    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    def summary(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'role': self.role,
        }

    def to_dict(self):
        data = self.summary()
        data['active'] = self.active
        data['created_at'] = _iso(self.created_at)
        return data

    def __repr__(self):
        return f"<User {self.username} - {self.role}>"


# ========================================
# 2. Utente
# ========================================
class Utente(db.Model):
    __tablename__ = 'utentes'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    process_number = db.Column(db.String(50), nullable=False, index=True)
    dob = db.Column(db.Date)
    age = db.Column(db.Integer)
    gender = db.Column(db.String(20))
    contact = db.Column(db.String(100))
    status = db.Column(db.String(20), default='waiting_triage', nullable=False, index=True)
    arrival_time = db.Column(db.DateTime, default=utcnow, nullable=False)
    triage_start_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    doctor_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    doctor = db.relationship('User', lazy=True)
    assessments = db.relationship(
        'Assessment',
        backref='utente',
        order_by='Assessment.created_at',
        cascade='all, delete-orphan',
        lazy=True
    )

    @property
    def latest_assessment(self):
        return self.assessments[-1] if self.assessments else None

    def to_dict(self, include_assessment=False):
        data = {
            'id': self.id,
            'name': self.name,
            'process_number': self.process_number,
            'dob': _iso(self.dob),
            'age': self.age,
            'gender': self.gender,
            'contact': self.contact,
            'status': self.status,
            'arrival_time': _iso(self.arrival_time),
            'triage_start_at': _iso(self.triage_start_at),
            'completed_at': _iso(self.completed_at),
            'doctor_id': self.doctor_id,
        }
        if include_assessment:
            latest = self.latest_assessment
            data['assessments'] = [latest.to_dict()] if latest else []
        return data

    def __repr__(self):
        return f"<Utente {self.process_number} - {self.status}>"


# ========================================
# 3. Assessment
# ========================================
class Assessment(db.Model):
    __tablename__ = 'assessments'

    id = db.Column(db.Integer, primary_key=True)
    utente_id = db.Column(db.Integer, db.ForeignKey('utentes.id'), nullable=False)
    nurse_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    color = db.Column(db.String(10), nullable=False)
    observations = db.Column(db.Text)
    ecg_done = db.Column(db.Boolean, default=False)
    combur_done = db.Column(db.Boolean, default=False)
    blood_pressure = db.Column(db.String(20))
    waiting_room = db.Column(db.String(50))
    heart_rate = db.Column(db.Integer)
    temperature = db.Column(db.Float)
    respiratory_rate = db.Column(db.Integer)
    pain = db.Column(db.Integer)
    spo2 = db.Column(db.Integer)
    glucose = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    nurse = db.relationship('User', lazy=True)

    def to_dict(self, include_nurse=False):
        data = {
            'id': self.id,
            'utente_id': self.utente_id,
            'nurse_id': self.nurse_id,
            'color': self.color,
            'observations': self.observations,
            'ecg_done': self.ecg_done,
            'combur_done': self.combur_done,
            'blood_pressure': self.blood_pressure,
            'waiting_room': self.waiting_room,
            'heart_rate': self.heart_rate,
            'temperature': self.temperature,
            'respiratory_rate': self.respiratory_rate,
            'pain': self.pain,
            'spo2': self.spo2,
            'glucose': self.glucose,
            'created_at': _iso(self.created_at),
        }
        if include_nurse:
            data['nurse'] = self.nurse.summary() if self.nurse else None
        return data

    def __repr__(self):
        return f"<Assessment {self.id} - {self.color}>"


# ========================================
# 4. AuditLog
# ========================================
class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    action = db.Column(db.String(50), nullable=False, index=True)
    target_type = db.Column(db.String(20))
    target_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    user = db.relationship('User', lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user': self.user.summary() if self.user else None,
            'action': self.action,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<Audit {self.action}>"


# ========================================
# 5. ChatMessage
# ========================================
class ChatMessage(db.Model):
    __tablename__ = 'chat_messages'

    id = db.Column(db.Integer, primary_key=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    to_role = db.Column(db.String(20))
    to_user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    from_user = db.relationship('User', foreign_keys=[from_user_id], lazy='joined')
    to_user = db.relationship('User', foreign_keys=[to_user_id], lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'from_user_id': self.from_user_id,
            'to_role': self.to_role,
            'to_user_id': self.to_user_id,
            'message': self.message,
            'created_at': _iso(self.created_at),
            'from_user': self.from_user.summary() if self.from_user else None,
            'to_user': self.to_user.summary() if self.to_user else None,
        }

    def __repr__(self):
        return f"<ChatMessage {self.id}>"


# ========================================
# 6. ChatThreadState
# ========================================
class ChatThreadState(db.Model):
    __tablename__ = 'chat_thread_states'
    __table_args__ = (db.UniqueConstraint('user_id', 'thread_key', name='uq_thread_state_user_key'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    thread_key = db.Column(db.String(100), nullable=False)
    archived = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime)

    def __repr__(self):
        return f"<ThreadState {self.user_id} {self.thread_key}>"


# ========================================
# 7. SystemSetting
# ========================================
class SystemSetting(db.Model):
    __tablename__ = 'system_settings'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=True)
    def __repr__(self): return f"<SystemSetting {self.key}={self.value}>"
