# college_election/errors.py
"""Business-rule exceptions raised by the services.

Every failure the services can report is a subclass of one of the families
below. The HTTP layer maps a family onto its status code, so routes never
translate errors by hand:

- ValidationError     400  missing or malformed input
- AuthenticationError 401  credentials or tokens not accepted
- AuthorizationError  403  role or ownership mismatch
- NotFoundError       404  referenced record does not exist
- ConflictError       409  duplicate vote, candidacy, email, overlap
- StateError          422  action invalid for the current lifecycle state
"""


class ElectionSystemError(Exception):
    """Base class for all business-rule violations."""
    status_code = 500
    default_message = "The request could not be completed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self):
        return type(self).__name__

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class ValidationError(ElectionSystemError):
    status_code = 400
    default_message = "Invalid input"


class AuthenticationError(ElectionSystemError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(ElectionSystemError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(ElectionSystemError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ElectionSystemError):
    status_code = 409
    default_message = "Conflicting request"


class StateError(ElectionSystemError):
    status_code = 422
    default_message = "Action not allowed in the current state"


# Identity store

class WeakPassword(ValidationError):
    default_message = "Password must be at least 8 characters long"


class NonCollegeEmail(ValidationError):
    default_message = "Please use your college email address"


class DuplicateEmail(ConflictError):
    default_message = "Email is already registered"


class DuplicateRollInClass(ConflictError):
    default_message = "This roll number is already registered for this class"


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid email or password"


class AccountDeactivated(AuthenticationError):
    default_message = "Your account is deactivated. Please contact the administrator."


class EmailUnverified(AuthenticationError):
    default_message = "Please verify your email address first"


class InvalidOrExpiredToken(ValidationError):
    default_message = "Invalid or expired token"


class UserHasDependents(StateError):
    default_message = "User is referenced by votes, candidacies or elections and cannot be deleted"


# Class registry

class DuplicateClassName(ConflictError):
    default_message = "Class with this name already exists"


class ClassHasStudents(StateError):
    default_message = "Cannot delete a class that still has students"


class ClassHasElections(StateError):
    default_message = "Cannot delete a class that still has elections"


# Candidate registry

class CandidacyWindowClosed(StateError):
    default_message = "Cannot add candidates to a completed or cancelled election"


class InvalidStudent(ValidationError):
    default_message = "Invalid student or student does not belong to this class"


class DuplicateCandidacy(ConflictError):
    default_message = "This student is already a candidate in this election"


class InvalidSymbol(ValidationError):
    default_message = "Invalid symbol"


class CandidacyLocked(StateError):
    default_message = "Cannot remove candidates from an active or completed election"


# Election lifecycle

class ElectionOverlap(ConflictError):
    default_message = "There is already an election scheduled for this class during this time period"


class InvalidTransition(StateError):
    default_message = "Invalid election status transition"


class ElectionNotActive(StateError):
    default_message = "Election is not currently active"


class Unauthorized(AuthorizationError):
    default_message = "You are not eligible to vote in this election"


class AlreadyVoted(ConflictError):
    default_message = "You have already voted in this election"


class InvalidCandidate(ValidationError):
    default_message = "Invalid candidate selection"


class InvalidOrDisabledLink(NotFoundError):
    default_message = "Invalid or expired voting link"


class VotingWindowClosed(StateError):
    default_message = "Voting is not currently available"


class RollNumberRequired(ValidationError):
    default_message = "Roll number is required"
