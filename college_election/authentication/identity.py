# college_election/authentication/identity.py

import logging
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import (
    Candidate, Election, LogAction, LogStatus, Role, SchoolClass, User, Vote, utcnow,
)
from college_election.database.queries import paginate
from college_election.encryption.password_hashing import PasswordHashingService
from college_election.errors import (
    AccountDeactivated, DuplicateEmail, DuplicateRollInClass, EmailUnverified, InvalidCredentials,
    InvalidOrExpiredToken, NonCollegeEmail, NotFoundError, UserHasDependents, ValidationError,
    WeakPassword,
)
from college_election.notifications.mailer import mailer
from college_election.security.input_validator import InputValidator

logger = logging.getLogger(__name__)

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)


def _new_token():
    return secrets.token_hex(32)


class IdentityService:
    """Accounts, credentials and the verification / reset token flows."""

    def __init__(self):
        self.hasher = PasswordHashingService()

    @property
    def validator(self):
        return InputValidator(current_app.config.get('COLLEGE_EMAIL_DOMAIN', ''))

    def get_user(self, user_id):
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _find_by_email(self, email):
        return db.session.query(User).filter(User.email == email).first()

    def _check_student_fields(self, roll_number, class_id, exclude_user_id=None):
        if not roll_number or class_id is None:
            raise ValidationError("Roll number and class are required for students")
        if not self.validator.validate_roll_number(roll_number):
            raise ValidationError("Invalid roll number")
        if db.session.get(SchoolClass, class_id) is None:
            raise ValidationError("Selected class does not exist")
        query = db.session.query(User).filter(User.class_id == class_id, User.roll_number == roll_number)
        if exclude_user_id is not None:
            query = query.filter(User.id != exclude_user_id)
        if query.first() is not None:
            raise DuplicateRollInClass()

    def _new_account(self, name, email, password, role, roll_number, class_id, confirm_password):
        validator = self.validator
        validator.require({'name': name, 'email': email, 'password': password}, 'name', 'email', 'password')
        if confirm_password is not None and password != confirm_password:
            raise ValidationError("Passwords do not match")
        if not self.hasher.is_strong_password(password):
            raise WeakPassword()

        email = validator.normalize_email(email)
        if not validator.validate_email(email):
            raise ValidationError("Invalid email address")
        if not validator.is_college_email(email):
            raise NonCollegeEmail()
        if self._find_by_email(email) is not None:
            raise DuplicateEmail()

        try:
            role = Role(role or Role.STUDENT.value) if not isinstance(role, Role) else role
        except ValueError:
            raise ValidationError("Invalid role")

        if role == Role.STUDENT:
            class_id = validator.parse_int(class_id, 'class') if class_id not in (None, '') else None
            roll_number = (roll_number or '').strip()
            self._check_student_fields(roll_number, class_id)
        else:
            roll_number, class_id = None, None

        return User(
            name=validator.sanitize_plain(name, 120),
            email=email,
            password_hash=self.hasher.hash_password(password),
            role=role,
            roll_number=roll_number,
            class_id=class_id,
        )

    def _commit_new_user(self, user):
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if self._find_by_email(user.email) is not None:
                raise DuplicateEmail()
            raise DuplicateRollInClass()

    def register(self, name, email, password, role=Role.STUDENT, roll_number=None, class_id=None,
                 confirm_password=None):
        """Self-service sign-up. Admin accounts are only created through create_user()."""
        if role in (Role.ADMIN, Role.ADMIN.value):
            raise ValidationError("Invalid role")
        user = self._new_account(name, email, password, role, roll_number, class_id, confirm_password)
        user.is_verified = False
        user.verification_token = _new_token()
        user.verification_expires = utcnow() + VERIFICATION_TOKEN_TTL
        self._commit_new_user(user)

        result = mailer.send_verification_email(user.email, user.name, user.verification_token)
        if not result['success']:
            logger.warning("Verification email to %s failed: %s", user.email, result.get('error'))

        audit_logger.create_log(LogAction.USER_REGISTER, user.id, {'role': user.role.value},
                                status=LogStatus.SUCCESS)
        return user

    def create_user(self, actor, name, email, password, role=Role.STUDENT, roll_number=None, class_id=None,
                    verified=True):
        """Admin / bootstrap path: the account is usable immediately."""
        user = self._new_account(name, email, password, role, roll_number, class_id, None)
        user.is_verified = bool(verified)
        self._commit_new_user(user)
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id if actor else None,
                                {'action_type': 'user_create', 'target_user_id': user.id,
                                 'role': user.role.value},
                                status=LogStatus.SUCCESS)
        return user

    def authenticate(self, email, password):
        email = self.validator.normalize_email(email)
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = self._find_by_email(email)
        if user is None:
            audit_logger.create_log(LogAction.USER_LOGIN, None, {'email': email, 'reason': 'unknown_email'},
                                    status=LogStatus.FAILURE)
            raise InvalidCredentials()
        if not user.active:
            audit_logger.create_log(LogAction.USER_LOGIN, user.id, {'reason': 'deactivated'},
                                    status=LogStatus.FAILURE)
            raise AccountDeactivated()
        if not self.hasher.verify_password(password, user.password_hash):
            audit_logger.create_log(LogAction.USER_LOGIN, user.id, {'reason': 'bad_password'},
                                    status=LogStatus.FAILURE)
            raise InvalidCredentials()
        if not user.is_verified:
            audit_logger.create_log(LogAction.USER_LOGIN, user.id, {'reason': 'unverified'},
                                    status=LogStatus.WARNING)
            raise EmailUnverified()

        if self.hasher.needs_rehash(user.password_hash):
            user.password_hash = self.hasher.hash_password(password)
        user.last_login = utcnow()
        db.session.commit()
        audit_logger.create_log(LogAction.USER_LOGIN, user.id, status=LogStatus.SUCCESS)
        return user

    def logout(self, user_id):
        audit_logger.create_log(LogAction.USER_LOGOUT, user_id, status=LogStatus.SUCCESS)

    def verify_email(self, token):
        if not token:
            raise InvalidOrExpiredToken()
        user = (db.session.query(User)
                .filter(User.verification_token == token, User.verification_expires > utcnow())
                .first())
        if user is None:
            raise InvalidOrExpiredToken()
        user.is_verified = True
        user.verification_token = None
        user.verification_expires = None
        db.session.commit()
        audit_logger.create_log(LogAction.USER_VERIFY, user.id, status=LogStatus.SUCCESS)
        return user

    def resend_verification(self, email):
        email = self.validator.normalize_email(email)
        user = (db.session.query(User)
                .filter(User.email == email, User.is_verified.is_(False))
                .first())
        if user is None:
            raise NotFoundError("Email not found or already verified")
        user.verification_token = _new_token()
        user.verification_expires = utcnow() + VERIFICATION_TOKEN_TTL
        db.session.commit()
        return mailer.send_verification_email(user.email, user.name, user.verification_token)

    def request_password_reset(self, email):
        """Always succeeds for the caller; unknown addresses are not revealed."""
        email = self.validator.normalize_email(email)
        if not email:
            raise ValidationError("Email is required")
        user = self._find_by_email(email)
        if user is None:
            return None

        user.reset_password_token = _new_token()
        user.reset_password_expires = utcnow() + RESET_TOKEN_TTL
        db.session.commit()
        mailer.send_password_reset_email(user.email, user.name, user.reset_password_token)
        audit_logger.create_log(LogAction.PASSWORD_RESET, user.id, {'stage': 'request'},
                                status=LogStatus.INFO)
        return user

    def _user_for_reset_token(self, token):
        if not token:
            raise InvalidOrExpiredToken()
        user = (db.session.query(User)
                .filter(User.reset_password_token == token, User.reset_password_expires > utcnow())
                .first())
        if user is None:
            raise InvalidOrExpiredToken()
        return user

    def check_reset_token(self, token):
        return self._user_for_reset_token(token)

    def complete_password_reset(self, token, password, confirm_password):
        user = self._user_for_reset_token(token)
        if not password or not confirm_password:
            raise ValidationError("Password and confirmation are required")
        if password != confirm_password:
            raise ValidationError("Passwords do not match")
        user.password_hash = self.hasher.hash_password(password)
        user.reset_password_token = None
        user.reset_password_expires = None
        db.session.commit()
        audit_logger.create_log(LogAction.PASSWORD_RESET, user.id, {'stage': 'complete'},
                                status=LogStatus.SUCCESS)
        return user

    def update_user(self, actor, user_id, name=None, email=None, role=None, active=None,
                    roll_number=None, class_id=None, password=None):
        validator = self.validator
        user = self.get_user(user_id)

        if email is not None:
            email = validator.normalize_email(email)
            if not validator.validate_email(email):
                raise ValidationError("Invalid email address")
            existing = self._find_by_email(email)
            if existing is not None and existing.id != user.id:
                raise DuplicateEmail()
            user.email = email
        if name is not None:
            name = validator.sanitize_plain(name, 120)
            if not name:
                raise ValidationError("Name is required")
            user.name = name
        if role is not None:
            try:
                user.role = role if isinstance(role, Role) else Role(role)
            except ValueError:
                raise ValidationError("Invalid role")
        if active is not None:
            if user.id == actor.user_id and not validator.parse_bool(active):
                raise ValidationError("You cannot deactivate your own account")
            user.active = validator.parse_bool(active)
        if password:
            user.password_hash = self.hasher.hash_password(password)

        if user.role == Role.STUDENT:
            if roll_number is not None or class_id is not None:
                new_roll = (roll_number if roll_number is not None else user.roll_number or '').strip()
                new_class = validator.parse_int(class_id, 'class') if class_id not in (None, '') else user.class_id
                self._check_student_fields(new_roll, new_class, exclude_user_id=user.id)
                user.roll_number, user.class_id = new_roll, new_class
        else:
            user.roll_number, user.class_id = None, None

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateEmail()
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id,
                                {'action_type': 'user_update', 'target_user_id': user.id},
                                status=LogStatus.SUCCESS)
        return user

    def update_profile(self, user_id, name):
        user = self.get_user(user_id)
        name = self.validator.sanitize_plain(name or '', 120)
        if not name:
            raise ValidationError("Name is required")
        user.name = name
        db.session.commit()
        return user

    def delete_user(self, actor, user_id):
        user = self.get_user(user_id)
        if user.id == actor.user_id:
            raise ValidationError("You cannot delete your own account")

        has_votes = db.session.query(Vote.id).filter(Vote.student_id == user.id).first() is not None
        has_candidacies = db.session.query(Candidate.id).filter(
            or_(Candidate.student_id == user.id, Candidate.approved_by_id == user.id)).first() is not None
        has_elections = db.session.query(Election.id).filter(Election.created_by_id == user.id).first() is not None
        if has_votes or has_candidacies or has_elections:
            raise UserHasDependents()

        for school_class in db.session.query(SchoolClass).filter(SchoolClass.class_teacher_id == user.id):
            school_class.class_teacher_id = None
        details = {'action_type': 'user_delete', 'target_user_id': user.id, 'email': user.email}
        db.session.delete(user)
        db.session.commit()
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id, details, status=LogStatus.SUCCESS)

    def list_users(self, role=None, search=None, page=1, per_page=20):
        query = db.session.query(User)
        if role:
            try:
                query = query.filter(User.role == (role if isinstance(role, Role) else Role(role)))
            except ValueError:
                raise ValidationError("Invalid role")
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern),
                                     User.roll_number.ilike(pattern)))
        return paginate(query.order_by(User.created_at.desc(), User.id.desc()), page, per_page)


identity_service = IdentityService()
