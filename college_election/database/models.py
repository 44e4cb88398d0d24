# college_election/database/models.py

import enum
from datetime import datetime, timezone

from college_election import db


def utcnow():
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(enum_cls, values_callable=_enum_values, native_enum=False,
                validate_strings=True, length=32),
        **kwargs
    )


class Role(enum.Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class ElectionType(enum.Enum):
    CR = "CR"
    BR = "BR"
    OTHER = "Other"


class ElectionStatus(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CandidateSymbol(enum.Enum):
    STAR = "star"
    CIRCLE = "circle"
    SQUARE = "square"
    TRIANGLE = "triangle"
    DIAMOND = "diamond"
    HEART = "heart"
    CLUB = "club"
    SPADE = "spade"
    APPLE = "apple"
    BOOK = "book"
    PENCIL = "pencil"
    PEN = "pen"
    TROPHY = "trophy"
    FLAG = "flag"
    CROWN = "crown"
    LEAF = "leaf"
    FLOWER = "flower"
    TREE = "tree"
    SUN = "sun"
    MOON = "moon"
    CLOUD = "cloud"
    UMBRELLA = "umbrella"
    BELL = "bell"
    KEY = "key"
    LOCK = "lock"
    PHONE = "phone"
    CAMERA = "camera"
    COMPUTER = "computer"
    ROCKET = "rocket"
    CAR = "car"


class LogAction(enum.Enum):
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_REGISTER = "user_register"
    USER_VERIFY = "user_verify"
    PASSWORD_RESET = "password_reset"
    ELECTION_CREATE = "election_create"
    ELECTION_UPDATE = "election_update"
    ELECTION_DELETE = "election_delete"
    CANDIDATE_CREATE = "candidate_create"
    CANDIDATE_APPROVE = "candidate_approve"
    CANDIDATE_REJECT = "candidate_reject"
    VOTE_CAST = "vote_cast"
    ANONYMOUS_VOTE_CAST = "anonymous_vote_cast"
    RESULT_PUBLISH = "result_publish"
    BACKUP_CREATE = "backup_create"
    SYSTEM_ERROR = "system_error"
    ADMIN_ACTION = "admin_action"
    TEACHER_ACTION = "teacher_action"


class LogStatus(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    INFO = "info"


DEFAULT_CANDIDATE_COLOR = '#3498db'


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(254), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)  # Argon2id
    role = _enum_column(Role, nullable=False, default=Role.STUDENT)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verification_token = db.Column(db.String(64), index=True)
    verification_expires = db.Column(db.DateTime)
    reset_password_token = db.Column(db.String(64), index=True)
    reset_password_expires = db.Column(db.DateTime)
    last_login = db.Column(db.DateTime)
    active = db.Column(db.Boolean, nullable=False, default=True)
    roll_number = db.Column(db.String(32))
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    school_class = db.relationship('SchoolClass', foreign_keys=[class_id], backref='students')

    __table_args__ = (
        db.UniqueConstraint('class_id', 'roll_number', name='uq_user_roll_in_class'),
    )

    def is_admin(self):
        return self.role == Role.ADMIN

    def is_teacher(self):
        return self.role == Role.TEACHER

    def is_student(self):
        return self.role == Role.STUDENT

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value,
            'is_verified': self.is_verified,
            'active': self.active,
            'roll_number': self.roll_number,
            'class_id': self.class_id,
            'last_login': _iso(self.last_login),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.id} {self.email} ({self.role.value})>'


class SchoolClass(db.Model):
    __tablename__ = 'classes'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    department = db.Column(db.String(100), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    section = db.Column(db.String(20), nullable=False)
    class_teacher_id = db.Column(db.Integer, db.ForeignKey('users.id', use_alter=True,
                                                           name='fk_class_teacher'))
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    class_teacher = db.relationship('User', foreign_keys=[class_teacher_id])
    elections = db.relationship('Election', backref='school_class', lazy=True)

    @property
    def full_name(self):
        return f'{self.department}-{self.year}-{self.section}'

    @property
    def student_count(self):
        return sum(1 for s in self.students if s.is_student())

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'full_name': self.full_name,
            'department': self.department,
            'year': self.year,
            'section': self.section,
            'class_teacher_id': self.class_teacher_id,
            'active': self.active,
            'student_count': self.student_count,
        }


class Election(db.Model):
    __tablename__ = 'elections'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    election_type = _enum_column(ElectionType, nullable=False, default=ElectionType.OTHER)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False, index=True)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = _enum_column(ElectionStatus, nullable=False, default=ElectionStatus.PENDING)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # QR code and public access
    qr_access_token = db.Column(db.String(64), unique=True)
    qr_enabled = db.Column(db.Boolean, nullable=False, default=True)
    allow_anonymous_voting = db.Column(db.Boolean, nullable=False, default=True)
    require_roll_number = db.Column(db.Boolean, nullable=False, default=True)

    # Results
    results_published = db.Column(db.Boolean, nullable=False, default=False)
    results_published_at = db.Column(db.DateTime)
    winner_id = db.Column(db.Integer, db.ForeignKey('candidates.id', use_alter=True,
                                                    name='fk_election_winner'))

    created_by = db.relationship('User', foreign_keys=[created_by_id])
    candidates = db.relationship('Candidate', backref='election', foreign_keys='Candidate.election_id',
                                 cascade='all, delete-orphan', order_by='Candidate.id', lazy=True)
    votes = db.relationship('Vote', backref='election', cascade='all, delete-orphan', lazy=True)
    anonymous_votes = db.relationship('AnonymousVote', backref='election',
                                      cascade='all, delete-orphan', lazy=True)
    voting_time_slots = db.relationship('VotingTimeSlot', backref='election',
                                        cascade='all, delete-orphan',
                                        order_by='VotingTimeSlot.start_time', lazy=True)
    winner = db.relationship('Candidate', foreign_keys=[winner_id], post_update=True)

    @property
    def vote_count(self):
        return len(self.votes)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'election_type': self.election_type.value,
            'class_id': self.class_id,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'status': self.status.value,
            'created_by_id': self.created_by_id,
            'candidates': [c.to_dict() for c in self.candidates],
            'qr_enabled': self.qr_enabled,
            'public_access': {
                'allow_anonymous_voting': self.allow_anonymous_voting,
                'require_roll_number': self.require_roll_number,
                'voting_time_slots': [s.to_dict() for s in self.voting_time_slots],
            },
            'results': {
                'published': self.results_published,
                'published_at': _iso(self.results_published_at),
                'winner_id': self.winner_id,
            },
        }

    def __repr__(self):
        return f'<Election {self.id} {self.title!r} ({self.status.value})>'


class VotingTimeSlot(db.Model):
    __tablename__ = 'voting_time_slots'
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.Integer, db.ForeignKey('elections.id'), nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def contains(self, moment):
        return self.is_active and self.start_time <= moment <= self.end_time

    def to_dict(self):
        return {
            'id': self.id,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'is_active': self.is_active,
        }


class Candidate(db.Model):
    __tablename__ = 'candidates'
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    election_id = db.Column(db.Integer, db.ForeignKey('elections.id'), nullable=False, index=True)
    symbol = _enum_column(CandidateSymbol, nullable=False)
    color = db.Column(db.String(7), nullable=False, default=DEFAULT_CANDIDATE_COLOR)
    manifesto = db.Column(db.Text, default='')
    approved = db.Column(db.Boolean, nullable=False, default=False)
    approved_by_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    approved_at = db.Column(db.DateTime)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    student = db.relationship('User', foreign_keys=[student_id], backref='candidacies')
    approved_by = db.relationship('User', foreign_keys=[approved_by_id])

    __table_args__ = (
        db.UniqueConstraint('student_id', 'election_id', name='uq_candidate_student_election'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.name if self.student else None,
            'roll_number': self.student.roll_number if self.student else None,
            'election_id': self.election_id,
            'symbol': self.symbol.value,
            'color': self.color,
            'manifesto': self.manifesto,
            'approved': self.approved,
            'active': self.active,
        }


class Vote(db.Model):
    __tablename__ = 'votes'
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.Integer, db.ForeignKey('elections.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    candidate_id = db.Column(db.Integer, db.ForeignKey('candidates.id'), nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow)

    student = db.relationship('User', backref='votes')
    candidate = db.relationship('Candidate')

    # One ballot per student per election, enforced by the database
    __table_args__ = (
        db.UniqueConstraint('election_id', 'student_id', name='uq_vote_student_election'),
    )

    def __repr__(self):
        return f'<Vote {self.id} by User {self.student_id}>'


class AnonymousVote(db.Model):
    __tablename__ = 'anonymous_votes'
    id = db.Column(db.Integer, primary_key=True)
    election_id = db.Column(db.Integer, db.ForeignKey('elections.id'), nullable=False)
    roll_number = db.Column(db.String(64), nullable=False)
    candidate_id = db.Column(db.Integer, db.ForeignKey('candidates.id'), nullable=False)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(512))
    timestamp = db.Column(db.DateTime, default=utcnow)

    candidate = db.relationship('Candidate')

    __table_args__ = (
        db.UniqueConstraint('election_id', 'roll_number', name='uq_anonymous_vote_roll_election'),
    )


class SystemLog(db.Model):
    __tablename__ = 'system_logs'
    id = db.Column(db.Integer, primary_key=True)
    action = _enum_column(LogAction, nullable=False, index=True)
    # Plain column: entries outlive the users they mention
    user_id = db.Column(db.Integer, index=True)
    details = db.Column(db.JSON)
    ip = db.Column(db.String(64))
    user_agent = db.Column(db.String(512))
    status = _enum_column(LogStatus, nullable=False, default=LogStatus.INFO)
    timestamp = db.Column(db.DateTime, default=utcnow, index=True)
    previous_hash = db.Column(db.String(64))
    entry_hash = db.Column(db.String(64), nullable=False)

    user = db.relationship('User', primaryjoin='foreign(SystemLog.user_id) == User.id', viewonly=True)

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action.value,
            'user_id': self.user_id,
            'user': {'name': self.user.name, 'email': self.user.email,
                     'role': self.user.role.value} if self.user else None,
            'details': self.details,
            'ip': self.ip,
            'user_agent': self.user_agent,
            'status': self.status.value,
            'timestamp': _iso(self.timestamp),
        }


def _iso(value):
    return value.isoformat() if value else None
