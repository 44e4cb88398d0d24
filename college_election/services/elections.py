# college_election/services/elections.py
"""Election lifecycle and vote integrity.

Every gate (voting, publication, reminders) goes through effective_state(),
which combines the stored status with the live time window. Nothing here runs
on a timer: an election only becomes active or completed through an explicit
call, and clock-dependent operations accept ``now`` so callers (and tests) can
pin the moment being evaluated.

At most one ballot per student and one per roll number is guaranteed by the
unique constraints on ``votes`` and ``anonymous_votes``; the pre-checks below
only produce the friendlier error for the common case.
"""

import enum
import logging
import uuid

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import (
    AnonymousVote, Candidate, Election, ElectionStatus, ElectionType, LogAction, LogStatus, Role,
    SchoolClass, User, Vote, utcnow,
)
from college_election.database.queries import paginate
from college_election.errors import (
    AlreadyVoted, AuthorizationError, ElectionNotActive, ElectionOverlap, InvalidCandidate,
    InvalidOrDisabledLink, InvalidTransition, NotFoundError, RollNumberRequired, StateError,
    Unauthorized, ValidationError, VotingWindowClosed,
)
from college_election.notifications.mailer import election_info, mailer
from college_election.security.input_validator import InputValidator

logger = logging.getLogger(__name__)


class EffectiveState(enum.Enum):
    SCHEDULED = "scheduled"
    NOT_STARTED = "not_started"
    OPEN = "open"
    ENDED = "ended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def effective_state(election, now=None):
    now = now or utcnow()
    if election.status == ElectionStatus.PENDING:
        return EffectiveState.SCHEDULED
    if election.status == ElectionStatus.COMPLETED:
        return EffectiveState.COMPLETED
    if election.status == ElectionStatus.CANCELLED:
        return EffectiveState.CANCELLED
    if now < election.start_date:
        return EffectiveState.NOT_STARTED
    if now > election.end_date:
        return EffectiveState.ENDED
    return EffectiveState.OPEN


def is_active(election, now=None):
    return effective_state(election, now) == EffectiveState.OPEN


def can_manage(actor, election):
    """Admins manage everything; teachers manage elections they created or whose class they teach."""
    if actor.role == Role.ADMIN:
        return True
    if actor.role != Role.TEACHER:
        return False
    if election.created_by_id == actor.user_id:
        return True
    school_class = election.school_class
    return school_class is not None and school_class.class_teacher_id == actor.user_id


def ensure_can_manage(actor, election):
    if not can_manage(actor, election):
        raise AuthorizationError("You do not have permission to manage this election")


# Allowed stored-status transitions
TRANSITIONS = {
    ElectionStatus.PENDING: {ElectionStatus.ACTIVE, ElectionStatus.CANCELLED},
    ElectionStatus.ACTIVE: {ElectionStatus.COMPLETED, ElectionStatus.CANCELLED},
    ElectionStatus.COMPLETED: set(),
    ElectionStatus.CANCELLED: set(),
}


def tally(election):
    """Count both ledgers per candidate without touching the election."""
    candidate_ids = [c.id for c in election.candidates]
    authenticated = dict.fromkeys(candidate_ids, 0)
    anonymous = dict.fromkeys(candidate_ids, 0)

    rows = (db.session.query(Vote.candidate_id, db.func.count(Vote.id))
            .filter(Vote.election_id == election.id).group_by(Vote.candidate_id).all())
    for candidate_id, count in rows:
        authenticated[candidate_id] = count
    rows = (db.session.query(AnonymousVote.candidate_id, db.func.count(AnonymousVote.id))
            .filter(AnonymousVote.election_id == election.id).group_by(AnonymousVote.candidate_id).all())
    for candidate_id, count in rows:
        anonymous[candidate_id] = count

    combined = {cid: authenticated.get(cid, 0) + anonymous.get(cid, 0)
                for cid in sorted(set(authenticated) | set(anonymous))}
    max_votes = max(combined.values(), default=0)
    # Ids ascend with creation order, which is the order ties are reported in
    leaders = [cid for cid, count in combined.items() if max_votes > 0 and count == max_votes]

    return {
        'election_id': election.id,
        'total_votes': sum(combined.values()),
        'authenticated_votes': sum(authenticated.values()),
        'anonymous_votes': sum(anonymous.values()),
        'vote_counts': combined,
        'authenticated_counts': authenticated,
        'anonymous_counts': anonymous,
        'max_votes': max_votes,
        'winner_id': leaders[0] if len(leaders) == 1 else None,
        'tied_candidate_ids': leaders if len(leaders) > 1 else [],
    }


class ElectionEngine:
    def __init__(self):
        self.validator = InputValidator()

    # Lookups

    def get_election(self, election_id):
        election = db.session.get(Election, election_id)
        if election is None:
            raise NotFoundError("Election not found")
        return election

    def election_for_token(self, token):
        if not token:
            raise InvalidOrDisabledLink()
        election = (db.session.query(Election)
                    .filter(Election.qr_access_token == token, Election.qr_enabled.is_(True))
                    .first())
        if election is None:
            raise InvalidOrDisabledLink()
        return election

    def _election_type(self, value):
        if isinstance(value, ElectionType):
            return value
        for member in ElectionType:
            if str(value).strip().lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValidationError("Invalid election type")

    def _check_overlap(self, class_id, start, end, exclude_id=None):
        query = db.session.query(Election.id).filter(
            Election.class_id == class_id,
            Election.status.in_([ElectionStatus.PENDING, ElectionStatus.ACTIVE]),
            Election.start_date <= end,
            Election.end_date >= start,
        )
        if exclude_id is not None:
            query = query.filter(Election.id != exclude_id)
        if query.first() is not None:
            raise ElectionOverlap()

    def _check_window(self, start, end, now):
        if start <= now:
            raise ValidationError("Start date must be in the future")
        if end <= start:
            raise ValidationError("End date must be after start date")

    # Creation and editing

    def create_election(self, actor, title, description, election_type, class_id, start_date, end_date,
                        now=None):
        now = now or utcnow()
        validator = self.validator
        validator.require({'title': title, 'description': description, 'election_type': election_type,
                           'class_id': class_id, 'start_date': start_date, 'end_date': end_date},
                          'title', 'description', 'election_type', 'class_id', 'start_date', 'end_date')

        school_class = db.session.get(SchoolClass, validator.parse_int(class_id, 'class'))
        if actor.role not in (Role.ADMIN, Role.TEACHER):
            raise AuthorizationError("You do not have permission to create an election for this class")
        if school_class is None or not school_class.active:
            raise ValidationError("Class does not exist or is inactive")
        if actor.role == Role.TEACHER and school_class.class_teacher_id != actor.user_id:
            raise AuthorizationError("You do not have permission to create an election for this class")

        start = validator.parse_datetime(start_date, 'start date')
        end = validator.parse_datetime(end_date, 'end date')
        self._check_window(start, end, now)
        self._check_overlap(school_class.id, start, end)

        election = Election(
            title=validator.sanitize_plain(title, 200),
            description=validator.sanitize_string(description, 5000),
            election_type=self._election_type(election_type),
            class_id=school_class.id,
            start_date=start,
            end_date=end,
            status=ElectionStatus.PENDING,
            created_by_id=actor.user_id,
        )
        db.session.add(election)
        db.session.commit()

        audit_logger.create_log(LogAction.ELECTION_CREATE, actor.user_id,
                                {'election_id': election.id, 'election_title': election.title,
                                 'election_type': election.election_type.value,
                                 'class_id': election.class_id},
                                status=LogStatus.SUCCESS)
        self._notify_students(election)
        return election

    def _active_students(self, class_id):
        return (db.session.query(User)
                .filter(User.class_id == class_id, User.role == Role.STUDENT,
                        User.active.is_(True), User.is_verified.is_(True))
                .order_by(User.id).all())

    def _notify_students(self, election):
        info = election_info(election)
        for student in self._active_students(election.class_id):
            result = mailer.send_election_notification_email(student.email, student.name, info)
            if not result['success']:
                logger.warning("Election notification to %s failed: %s", student.email, result.get('error'))

    def update_election(self, actor, election_id, title=None, description=None, start_date=None,
                        end_date=None, now=None):
        now = now or utcnow()
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.status in (ElectionStatus.COMPLETED, ElectionStatus.CANCELLED):
            raise StateError(f"Cannot modify a {election.status.value} election")

        updated = []
        if title:
            election.title = self.validator.sanitize_plain(title, 200)
            updated.append('title')
        if description:
            election.description = self.validator.sanitize_string(description, 5000)
            updated.append('description')

        if start_date or end_date:
            if election.status != ElectionStatus.PENDING:
                raise StateError("Dates can only be changed while the election is pending")
            start = self.validator.parse_datetime(start_date, 'start date') if start_date else election.start_date
            end = self.validator.parse_datetime(end_date, 'end date') if end_date else election.end_date
            self._check_window(start, end, now)
            self._check_overlap(election.class_id, start, end, exclude_id=election.id)
            election.start_date, election.end_date = start, end
            updated += [f for f, v in (('start_date', start_date), ('end_date', end_date)) if v]

        db.session.commit()
        audit_logger.create_log(LogAction.ELECTION_UPDATE, actor.user_id,
                                {'election_id': election.id, 'election_title': election.title,
                                 'updated_fields': updated},
                                status=LogStatus.SUCCESS)
        return election

    # Status transitions

    def _transition(self, actor, election, target):
        if target not in TRANSITIONS[election.status]:
            raise InvalidTransition(
                f"Cannot change election status from {election.status.value} to {target.value}")
        previous = election.status
        election.status = target
        db.session.commit()
        audit_logger.create_log(LogAction.ELECTION_UPDATE, actor.user_id,
                                {'election_id': election.id, 'from_status': previous.value,
                                 'to_status': target.value},
                                status=LogStatus.SUCCESS)
        return election

    def activate(self, actor, election_id):
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        return self._transition(actor, election, ElectionStatus.ACTIVE)

    def cancel(self, actor, election_id):
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        return self._transition(actor, election, ElectionStatus.CANCELLED)

    def complete(self, actor, election_id, now=None):
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        self._transition(actor, election, ElectionStatus.COMPLETED)
        self.calculate_results(election, now)
        return election

    def change_status(self, actor, election_id, status, now=None):
        try:
            target = status if isinstance(status, ElectionStatus) else ElectionStatus(str(status).lower())
        except ValueError:
            raise ValidationError("Invalid status")
        if target == ElectionStatus.ACTIVE:
            return self.activate(actor, election_id)
        if target == ElectionStatus.CANCELLED:
            return self.cancel(actor, election_id)
        if target == ElectionStatus.COMPLETED:
            return self.complete(actor, election_id, now)
        raise InvalidTransition("Elections cannot be moved back to pending")

    # Voting

    def _candidate_for(self, election, candidate_id):
        try:
            candidate_id = int(candidate_id)
        except (TypeError, ValueError):
            raise InvalidCandidate()
        candidate = db.session.get(Candidate, candidate_id)
        if (candidate is None or candidate.election_id != election.id
                or not candidate.approved or not candidate.active):
            raise InvalidCandidate()
        return candidate

    def cast_vote(self, student_id, election_id, candidate_id, ip=None, user_agent=None, now=None):
        now = now or utcnow()
        election = self.get_election(election_id)
        if election.status != ElectionStatus.ACTIVE or not is_active(election, now):
            raise ElectionNotActive()

        student = db.session.get(User, student_id)
        if (student is None or student.role != Role.STUDENT or not student.active
                or student.class_id != election.class_id):
            raise Unauthorized()
        if self.has_voted(election, student_id=student.id, roll_number=student.roll_number):
            raise AlreadyVoted()
        candidate = self._candidate_for(election, candidate_id)

        vote = Vote(election_id=election.id, student_id=student.id, candidate_id=candidate.id, timestamp=now)
        db.session.add(vote)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent ballot from the same student won the race
            db.session.rollback()
            raise AlreadyVoted()

        audit_logger.create_log(LogAction.VOTE_CAST, student.id,
                                {'election_id': election.id, 'election_title': election.title},
                                ip=ip, user_agent=user_agent, status=LogStatus.SUCCESS)
        return vote

    def is_voting_allowed(self, election, now=None):
        now = now or utcnow()
        if not is_active(election, now) or not election.allow_anonymous_voting:
            return False
        if election.voting_time_slots:
            return any(slot.contains(now) for slot in election.voting_time_slots)
        return True

    def cast_anonymous_vote(self, token, candidate_id, roll_number=None, ip=None, user_agent=None, now=None):
        now = now or utcnow()
        election = self.election_for_token(token)
        if not self.is_voting_allowed(election, now):
            raise VotingWindowClosed()

        roll_number = '' if roll_number is None else str(roll_number).strip()
        if election.require_roll_number and not roll_number:
            raise RollNumberRequired()
        if roll_number:
            if not self.validator.validate_roll_number(roll_number):
                raise ValidationError("Invalid roll number")
            if self.has_voted(election, roll_number=roll_number):
                raise AlreadyVoted("This roll number has already voted")
            # A signed-in ballot from the student holding this roll number counts too
            owner = (db.session.query(User.id)
                     .filter(User.class_id == election.class_id, User.role == Role.STUDENT,
                             User.roll_number == roll_number).first())
            if owner is not None and self.has_voted(election, student_id=owner.id):
                raise AlreadyVoted("This roll number has already voted")
        candidate = self._candidate_for(election, candidate_id)

        vote = AnonymousVote(
            election_id=election.id,
            roll_number=roll_number or f"anonymous_{uuid.uuid4().hex}",
            candidate_id=candidate.id,
            ip_address=ip,
            user_agent=(user_agent or '')[:512] or None,
            timestamp=now,
        )
        db.session.add(vote)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise AlreadyVoted("This roll number has already voted")

        audit_logger.create_log(LogAction.ANONYMOUS_VOTE_CAST, None,
                                {'election_id': election.id, 'roll_number': roll_number or None},
                                ip=ip, user_agent=user_agent, status=LogStatus.SUCCESS)
        return vote

    def has_voted(self, election, student_id=None, roll_number=None):
        if student_id is not None:
            found = (db.session.query(Vote.id)
                     .filter(Vote.election_id == election.id, Vote.student_id == student_id).first())
            if found is not None:
                return True
        if roll_number:
            found = (db.session.query(AnonymousVote.id)
                     .filter(AnonymousVote.election_id == election.id,
                             AnonymousVote.roll_number == roll_number).first())
            if found is not None:
                return True
        return False

    # Results

    def calculate_results(self, election, now=None):
        """Tally both ledgers; with a unique leader the election is completed and published.

        Pending and cancelled elections only get the tally back, since neither
        may move to completed.
        """
        now = now or utcnow()
        results = tally(election)
        can_complete = (election.status == ElectionStatus.COMPLETED
                        or ElectionStatus.COMPLETED in TRANSITIONS[election.status])
        if results['winner_id'] is not None and can_complete:
            election.winner_id = results['winner_id']
            election.status = ElectionStatus.COMPLETED
            if not election.results_published:
                election.results_published = True
                election.results_published_at = now
            db.session.commit()
        return results

    def publish_results(self, actor, election_id, now=None):
        now = now or utcnow()
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.results_published:
            return election

        if election.status != ElectionStatus.COMPLETED:
            if election.status == ElectionStatus.ACTIVE and election.end_date <= now:
                self._transition(actor, election, ElectionStatus.COMPLETED)
            else:
                raise StateError("Cannot publish results for an election that is not completed")

        results = self.calculate_results(election, now)
        election.results_published = True
        if election.results_published_at is None:
            election.results_published_at = now
        db.session.commit()

        audit_logger.create_log(LogAction.RESULT_PUBLISH, actor.user_id,
                                {'election_id': election.id, 'election_title': election.title,
                                 'total_votes': results['total_votes'], 'winner_id': results['winner_id']},
                                status=LogStatus.SUCCESS)
        return election

    def results_for(self, viewer, election_id):
        election = self.get_election(election_id)
        if viewer.role == Role.STUDENT:
            if not election.results_published:
                raise AuthorizationError("Results have not been published yet")
            student = db.session.get(User, viewer.user_id)
            if student is None or student.class_id != election.class_id:
                raise AuthorizationError("You do not have access to this election")
        elif viewer.role not in (Role.TEACHER, Role.ADMIN):
            raise AuthorizationError()

        results = tally(election)
        candidates = {c.id: c for c in election.candidates}
        results.update({
            'title': election.title,
            'status': election.status.value,
            'published': election.results_published,
            'published_at': election.results_published_at.isoformat() if election.results_published_at else None,
            'winner_id': election.winner_id,
            'vote_counts': {str(k): v for k, v in results['vote_counts'].items()},
            'authenticated_counts': {str(k): v for k, v in results['authenticated_counts'].items()},
            'anonymous_counts': {str(k): v for k, v in results['anonymous_counts'].items()},
            'candidates': [dict(c.to_dict(), votes=results['vote_counts'].get(cid, 0))
                           for cid, c in candidates.items()],
        })
        return results

    def vote_statistics(self, election):
        results = tally(election)
        total_students = len(self._class_students(election.class_id))
        participation = (results['authenticated_votes'] / total_students * 100) if total_students else 0.0
        return {
            'election_id': election.id,
            'total_students': total_students,
            'authenticated_votes': results['authenticated_votes'],
            'anonymous_votes': results['anonymous_votes'],
            'total_votes': results['total_votes'],
            'participation_rate': round(participation, 2),
            'candidates': [{'candidate_id': c.id,
                            'student_name': c.student.name if c.student else None,
                            'votes': results['vote_counts'].get(c.id, 0)}
                           for c in election.candidates],
        }

    def _class_students(self, class_id):
        return (db.session.query(User)
                .filter(User.class_id == class_id, User.role == Role.STUDENT, User.active.is_(True))
                .order_by(User.roll_number, User.id).all())

    def students_not_voted(self, election):
        voted = db.select(Vote.student_id).where(Vote.election_id == election.id)
        return (db.session.query(User)
                .filter(User.class_id == election.class_id, User.role == Role.STUDENT,
                        User.active.is_(True), User.id.notin_(voted))
                .order_by(User.roll_number, User.id).all())

    def send_voting_reminder(self, actor, election_id):
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.status != ElectionStatus.ACTIVE:
            raise StateError("Reminders can only be sent for active elections")

        recipients = [s for s in self.students_not_voted(election) if s.is_verified]
        info = election_info(election)
        sent = 0
        for student in recipients:
            result = mailer.send_voting_reminder_email(student.email, student.name, info)
            if result['success']:
                sent += 1
            else:
                logger.warning("Reminder to %s failed: %s", student.email, result.get('error'))

        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id,
                                {'action_type': 'send_reminder', 'election_id': election.id,
                                 'election_title': election.title,
                                 'recipients': len(recipients), 'sent': sent},
                                status=LogStatus.SUCCESS if sent == len(recipients) else LogStatus.WARNING)
        return {'recipients': len(recipients), 'sent': sent}

    # Removal and listing

    def delete_election(self, actor, election_id):
        election = self.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.status == ElectionStatus.ACTIVE:
            raise StateError("Cannot delete an active election")

        details = {'election_id': election.id, 'election_title': election.title,
                   'status': election.status.value}
        election.winner = None
        db.session.flush()
        db.session.delete(election)
        db.session.commit()
        audit_logger.create_log(LogAction.ELECTION_DELETE, actor.user_id, details, status=LogStatus.SUCCESS)

    def list_elections(self, status=None, election_type=None, class_id=None, search=None, page=1, per_page=20):
        query = db.session.query(Election)
        if status:
            try:
                query = query.filter(Election.status == ElectionStatus(str(status).lower()))
            except ValueError:
                raise ValidationError("Invalid status")
        if election_type:
            query = query.filter(Election.election_type == self._election_type(election_type))
        if class_id not in (None, ''):
            query = query.filter(Election.class_id == self.validator.parse_int(class_id, 'class'))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Election.title.ilike(pattern), Election.description.ilike(pattern)))
        return paginate(query.order_by(Election.start_date.desc(), Election.id.desc()), page, per_page)

    def elections_for_teacher(self, teacher_id):
        taught = db.select(SchoolClass.id).where(SchoolClass.class_teacher_id == teacher_id)
        return (db.session.query(Election)
                .filter(or_(Election.created_by_id == teacher_id, Election.class_id.in_(taught)))
                .order_by(Election.start_date.desc()).all())

    def elections_for_student(self, student_id, now=None):
        now = now or utcnow()
        student = db.session.get(User, student_id)
        if student is None:
            raise NotFoundError("User not found")
        buckets = {'active': [], 'upcoming': [], 'past': []}
        if student.class_id is None:
            return buckets

        elections = (db.session.query(Election)
                     .filter(Election.class_id == student.class_id)
                     .order_by(Election.start_date).all())
        for election in elections:
            state = effective_state(election, now)
            entry = dict(election.to_dict(), effective_state=state.value,
                         has_voted=self.has_voted(election, student_id=student.id))
            if state == EffectiveState.OPEN:
                buckets['active'].append(entry)
            elif state in (EffectiveState.SCHEDULED, EffectiveState.NOT_STARTED):
                buckets['upcoming'].append(entry)
            else:
                buckets['past'].append(entry)
        return buckets


election_engine = ElectionEngine()
