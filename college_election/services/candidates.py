# college_election/services/candidates.py

from sqlalchemy.exc import IntegrityError

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import (
    AnonymousVote, Candidate, CandidateSymbol, DEFAULT_CANDIDATE_COLOR, ElectionStatus, LogAction,
    LogStatus, Role, User, Vote, utcnow,
)
from college_election.errors import (
    CandidacyLocked, CandidacyWindowClosed, DuplicateCandidacy, InvalidStudent, InvalidSymbol,
    NotFoundError, ValidationError,
)
from college_election.security.input_validator import InputValidator
from college_election.services.elections import election_engine, ensure_can_manage


class CandidateRegistry:
    def __init__(self):
        self.validator = InputValidator()

    def available_symbols(self):
        return [symbol.value for symbol in CandidateSymbol]

    def _symbol(self, value):
        try:
            return value if isinstance(value, CandidateSymbol) else CandidateSymbol(str(value).strip().lower())
        except ValueError:
            raise InvalidSymbol()

    def _candidate(self, election, candidate_id):
        candidate = db.session.get(Candidate, self.validator.parse_int(candidate_id, 'candidate'))
        if candidate is None or candidate.election_id != election.id:
            raise NotFoundError("Candidate not found")
        return candidate

    def add_candidate(self, actor, election_id, student_id, symbol, color=None, manifesto=''):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.status in (ElectionStatus.COMPLETED, ElectionStatus.CANCELLED):
            raise CandidacyWindowClosed()

        student = db.session.get(User, self.validator.parse_int(student_id, 'student'))
        if (student is None or student.role != Role.STUDENT or not student.active
                or student.class_id != election.class_id):
            raise InvalidStudent()

        existing = (db.session.query(Candidate.id)
                    .filter(Candidate.student_id == student.id, Candidate.election_id == election.id)
                    .first())
        if existing is not None:
            raise DuplicateCandidacy()

        symbol = self._symbol(symbol)
        color = color or DEFAULT_CANDIDATE_COLOR
        if not self.validator.validate_color(color):
            raise ValidationError("Invalid colour, expected #rrggbb")

        now = utcnow()
        candidate = Candidate(
            student_id=student.id,
            election_id=election.id,
            symbol=symbol,
            color=color.lower(),
            manifesto=self.validator.sanitize_string(manifesto or '', 5000),
            approved=True,
            approved_by_id=actor.user_id,
            approved_at=now,
        )
        db.session.add(candidate)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateCandidacy()

        audit_logger.create_log(LogAction.CANDIDATE_CREATE, actor.user_id,
                                {'candidate_id': candidate.id, 'student_id': student.id,
                                 'student_name': student.name, 'election_id': election.id,
                                 'election_title': election.title},
                                status=LogStatus.SUCCESS)
        return candidate

    def remove_candidate(self, actor, election_id, candidate_id):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        if election.status in (ElectionStatus.ACTIVE, ElectionStatus.COMPLETED):
            raise CandidacyLocked()

        candidate = self._candidate(election, candidate_id)
        has_votes = (
            db.session.query(Vote.id).filter(Vote.candidate_id == candidate.id).first() is not None
            or db.session.query(AnonymousVote.id).filter(AnonymousVote.candidate_id == candidate.id).first()
            is not None
        )
        if has_votes:
            raise CandidacyLocked("Cannot remove a candidate who has received votes")

        details = {'action_type': 'candidate_remove', 'candidate_id': candidate.id,
                   'student_name': candidate.student.name if candidate.student else None,
                   'election_id': election.id, 'election_title': election.title}
        election.candidates.remove(candidate)
        db.session.commit()
        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id, details, status=LogStatus.SUCCESS)

    def set_approval(self, actor, candidate_id, approved, election_id=None):
        candidate = db.session.get(Candidate, self.validator.parse_int(candidate_id, 'candidate'))
        if candidate is None or (election_id is not None and candidate.election_id != int(election_id)):
            raise NotFoundError("Candidate not found")
        election = candidate.election
        ensure_can_manage(actor, election)
        if election.status == ElectionStatus.COMPLETED:
            raise CandidacyLocked("Candidates of a completed election cannot be changed")

        approved = self.validator.parse_bool(approved)
        candidate.approved = approved
        candidate.approved_by_id = actor.user_id if approved else None
        candidate.approved_at = utcnow() if approved else None
        db.session.commit()

        audit_logger.create_log(LogAction.CANDIDATE_APPROVE if approved else LogAction.CANDIDATE_REJECT,
                                actor.user_id,
                                {'candidate_id': candidate.id, 'election_id': election.id},
                                status=LogStatus.SUCCESS)
        return candidate

    def list_candidates(self, election_id, approved_only=False):
        election = election_engine.get_election(election_id)
        candidates = election.candidates
        if approved_only:
            candidates = [c for c in candidates if c.approved and c.active]
        return candidates


candidate_registry = CandidateRegistry()
