import os

# Configure the app before any test module imports it
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['MAIL_SUPPRESS_SEND'] = 'true'
os.environ['COLLEGE_EMAIL_DOMAIN'] = 'college.edu'
os.environ['APP_ENV'] = 'testing'

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from college_election import app, db
from college_election.authentication.rbac import AuthContext
from college_election.database.models import Role, SchoolClass, User
from college_election.encryption.password_hashing import PasswordHashingService
from college_election.notifications.mailer import mailer
from college_election.security.token_manager import token_manager
from college_election.services.candidates import candidate_registry
from college_election.services.elections import election_engine

PASSWORD = "CorrectHorse42"
# Hashed once; argon2 is deliberately slow
PASSWORD_HASH = PasswordHashingService().hash_password(PASSWORD)

NOW = datetime(2031, 5, 1, 8, 0)


@pytest.fixture(autouse=True)
def app_ctx():
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        mailer.outbox.clear()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app_ctx):
    with app.test_client() as client:
        yield client


@pytest.fixture
def clock():
    """Fixed moments around the default election window (09:00 - 18:00)."""
    return SimpleNamespace(
        now=NOW,
        before=NOW + timedelta(minutes=30),
        during=NOW + timedelta(hours=4),
        after=NOW + timedelta(hours=11),
    )


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def as_actor():
    return AuthContext.for_user


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {'Authorization': f"Bearer {token_manager.generate_token(user)}"}
    return _headers


@pytest.fixture
def make_user():
    counter = {'n': 0}

    def _make(role=Role.STUDENT, school_class=None, roll_number=None, verified=True, active=True, name=None):
        counter['n'] += 1
        n = counter['n']
        user = User(
            name=name or f"{role.value.title()} {n}",
            email=f"{role.value}{n}@college.edu",
            password_hash=PASSWORD_HASH,
            role=role,
            is_verified=verified,
            active=active,
            roll_number=(roll_number or f"R{n:03d}") if role == Role.STUDENT else None,
            class_id=school_class.id if (school_class is not None and role == Role.STUDENT) else None,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(Role.ADMIN, name="Admin")


@pytest.fixture
def teacher(make_user):
    return make_user(Role.TEACHER, name="Class Teacher")


@pytest.fixture
def school_class(teacher):
    school_class = SchoolClass(name="CSE-2-A", department="CSE", year=2, section="A",
                               class_teacher_id=teacher.id)
    db.session.add(school_class)
    db.session.commit()
    return school_class


@pytest.fixture
def other_class():
    school_class = SchoolClass(name="ECE-3-B", department="ECE", year=3, section="B")
    db.session.add(school_class)
    db.session.commit()
    return school_class


@pytest.fixture
def students(make_user, school_class):
    return [make_user(Role.STUDENT, school_class) for _ in range(4)]


@pytest.fixture
def make_election(teacher, school_class, clock):
    def _make(start=None, end=None, school=None, by=None, title="Class Representative"):
        return election_engine.create_election(
            AuthContext.for_user(by or teacher), title=title, description="Pick a CR",
            election_type="CR", class_id=(school or school_class).id,
            start_date=start or clock.now + timedelta(hours=1),
            end_date=end or clock.now + timedelta(hours=10),
            now=clock.now,
        )
    return _make


@pytest.fixture
def open_election(make_election, teacher, students):
    """Active election with the first two students as approved candidates."""
    election = make_election()
    teacher_ctx = AuthContext.for_user(teacher)
    for student, symbol in zip(students[:2], ('star', 'moon')):
        candidate_registry.add_candidate(teacher_ctx, election.id, student.id, symbol)
    election_engine.activate(teacher_ctx, election.id)
    return election
