from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from college_election import db
from college_election.database.models import AnonymousVote, LogAction, Role, SystemLog, Vote
from college_election.errors import (
    AlreadyVoted, ElectionNotActive, InvalidCandidate, InvalidOrDisabledLink, RollNumberRequired,
    Unauthorized, ValidationError, VotingWindowClosed,
)
from college_election.services.candidates import candidate_registry
from college_election.services.elections import election_engine, tally
from college_election.services.qr_access import qr_access_service


@pytest.fixture
def qr_token(open_election, teacher, as_actor):
    return qr_access_service.generate_qr(as_actor(teacher), open_election.id)['access_token']


def test_cast_vote(open_election, students, clock):
    candidate = open_election.candidates[0]
    vote = election_engine.cast_vote(students[2].id, open_election.id, candidate.id,
                                     ip="10.1.1.1", user_agent="pytest", now=clock.during)
    assert vote.candidate_id == candidate.id
    assert vote.timestamp == clock.during
    assert election_engine.has_voted(open_election, student_id=students[2].id)

    entry = db.session.query(SystemLog).filter(SystemLog.action == LogAction.VOTE_CAST).one()
    assert entry.user_id == students[2].id
    assert entry.ip == "10.1.1.1"


def test_one_vote_per_student(open_election, students, clock):
    election_engine.cast_vote(students[2].id, open_election.id, open_election.candidates[0].id, now=clock.during)
    with pytest.raises(AlreadyVoted):
        election_engine.cast_vote(students[2].id, open_election.id, open_election.candidates[1].id,
                                  now=clock.during)
    assert db.session.query(Vote).count() == 1


def test_concurrent_duplicate_vote_maps_to_already_voted(open_election, students, clock, monkeypatch):
    election_engine.cast_vote(students[2].id, open_election.id, open_election.candidates[0].id, now=clock.during)

    # Simulate a racing request that passed the pre-check before the first commit
    monkeypatch.setattr(election_engine, "has_voted", lambda *args, **kwargs: False)
    with pytest.raises(AlreadyVoted):
        election_engine.cast_vote(students[2].id, open_election.id, open_election.candidates[1].id,
                                  now=clock.during)
    assert db.session.query(Vote).count() == 1


def test_vote_uniqueness_enforced_by_database(open_election, students):
    candidate_id = open_election.candidates[0].id
    db.session.add(Vote(election_id=open_election.id, student_id=students[2].id, candidate_id=candidate_id))
    db.session.commit()
    db.session.add(Vote(election_id=open_election.id, student_id=students[2].id, candidate_id=candidate_id))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_vote_outside_window(open_election, students, clock):
    candidate_id = open_election.candidates[0].id
    with pytest.raises(ElectionNotActive):
        election_engine.cast_vote(students[2].id, open_election.id, candidate_id, now=clock.before)
    with pytest.raises(ElectionNotActive):
        election_engine.cast_vote(students[2].id, open_election.id, candidate_id, now=clock.after)


def test_vote_requires_active_status(make_election, students, teacher, clock, as_actor):
    election = make_election()
    candidate = candidate_registry.add_candidate(as_actor(teacher), election.id, students[0].id, "star")
    # Pending elections never accept votes, even inside the window
    with pytest.raises(ElectionNotActive):
        election_engine.cast_vote(students[2].id, election.id, candidate.id, now=clock.during)


def test_vote_eligibility(open_election, make_user, other_class, teacher, students, clock):
    candidate_id = open_election.candidates[0].id
    outsider = make_user(Role.STUDENT, other_class)
    deactivated = make_user(Role.STUDENT, open_election.school_class, active=False)

    for voter in (outsider, deactivated, teacher):
        with pytest.raises(Unauthorized):
            election_engine.cast_vote(voter.id, open_election.id, candidate_id, now=clock.during)


def test_vote_for_invalid_candidate(open_election, make_election, students, teacher, clock, as_actor):
    other = make_election(start=clock.now + timedelta(days=1), end=clock.now + timedelta(days=2))
    foreign = candidate_registry.add_candidate(as_actor(teacher), other.id, students[3].id, "sun")

    for bad in (foreign.id, 9999, "abc", None):
        with pytest.raises(InvalidCandidate):
            election_engine.cast_vote(students[2].id, open_election.id, bad, now=clock.during)

    rejected = open_election.candidates[1]
    candidate_registry.set_approval(as_actor(teacher), rejected.id, False)
    with pytest.raises(InvalidCandidate):
        election_engine.cast_vote(students[2].id, open_election.id, rejected.id, now=clock.during)
    assert db.session.query(Vote).count() == 0


# Anonymous (QR) voting

def test_anonymous_vote_with_roll_number(open_election, qr_token, clock):
    vote = election_engine.cast_anonymous_vote(qr_token, open_election.candidates[0].id, roll_number="21CS099",
                                               ip="10.0.0.9", user_agent="phone", now=clock.during)
    assert vote.roll_number == "21CS099"
    assert election_engine.has_voted(open_election, roll_number="21CS099")

    with pytest.raises(AlreadyVoted):
        election_engine.cast_anonymous_vote(qr_token, open_election.candidates[1].id, roll_number="21CS099",
                                            now=clock.during)
    entry = db.session.query(SystemLog).filter(SystemLog.action == LogAction.ANONYMOUS_VOTE_CAST).one()
    assert entry.user_id is None


def test_anonymous_vote_roll_number_rules(open_election, qr_token, teacher, clock, as_actor):
    candidate_id = open_election.candidates[0].id
    with pytest.raises(RollNumberRequired):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="  ", now=clock.during)
    with pytest.raises(ValidationError):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="not valid!", now=clock.during)

    qr_access_service.update_public_access(as_actor(teacher), open_election.id, require_roll_number=False)
    first = election_engine.cast_anonymous_vote(qr_token, candidate_id, now=clock.during)
    second = election_engine.cast_anonymous_vote(qr_token, candidate_id, now=clock.during)
    assert first.roll_number.startswith("anonymous_")
    assert first.roll_number != second.roll_number


def test_anonymous_vote_link_states(open_election, qr_token, teacher, clock, as_actor):
    candidate_id = open_election.candidates[0].id
    with pytest.raises(InvalidOrDisabledLink):
        election_engine.cast_anonymous_vote("deadbeef", candidate_id, roll_number="R1", now=clock.during)

    assert qr_access_service.toggle_qr_access(as_actor(teacher), open_election.id) is False
    with pytest.raises(InvalidOrDisabledLink):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="R1", now=clock.during)

    # Re-enabling restores the very same link
    assert qr_access_service.toggle_qr_access(as_actor(teacher), open_election.id) is True
    assert qr_access_service.generate_qr(as_actor(teacher), open_election.id)['access_token'] == qr_token
    election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="R1", now=clock.during)


def test_anonymous_voting_disabled(open_election, qr_token, teacher, clock, as_actor):
    qr_access_service.update_public_access(as_actor(teacher), open_election.id, allow_anonymous_voting="false")
    with pytest.raises(VotingWindowClosed):
        election_engine.cast_anonymous_vote(qr_token, open_election.candidates[0].id, roll_number="R1",
                                            now=clock.during)


def test_anonymous_vote_outside_election_window(open_election, qr_token, clock):
    for moment in (clock.before, clock.after):
        with pytest.raises(VotingWindowClosed):
            election_engine.cast_anonymous_vote(qr_token, open_election.candidates[0].id, roll_number="R1",
                                                now=moment)


def test_voting_time_slots(open_election, qr_token, teacher, students, clock, as_actor):
    day = clock.now.replace(hour=0)
    qr_access_service.add_voting_time_slot(as_actor(teacher), open_election.id,
                                           day.replace(hour=10), day.replace(hour=16))
    candidate_id = open_election.candidates[0].id

    with pytest.raises(VotingWindowClosed):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="R1", now=day.replace(hour=9))
    election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="R1", now=day.replace(hour=12))
    with pytest.raises(VotingWindowClosed):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number="R2", now=day.replace(hour=17))

    # Slots only narrow anonymous voting; signed-in students are unaffected
    election_engine.cast_vote(students[2].id, open_election.id, candidate_id,
                              now=day.replace(hour=17))


def test_time_slot_validation(open_election, teacher, as_actor):
    with pytest.raises(ValidationError):
        qr_access_service.add_voting_time_slot(as_actor(teacher), open_election.id,
                                               "2031-05-01T16:00:00", "2031-05-01T10:00:00")


def test_qr_vote_after_signed_in_vote_is_rejected(open_election, qr_token, students, clock):
    student = students[2]
    candidate_id = open_election.candidates[0].id
    election_engine.cast_vote(student.id, open_election.id, candidate_id, now=clock.during)

    with pytest.raises(AlreadyVoted):
        election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number=student.roll_number,
                                            now=clock.during)
    assert db.session.query(AnonymousVote).count() == 0
    assert tally(open_election)['vote_counts'][candidate_id] == 1


def test_signed_in_vote_after_qr_vote_is_rejected(open_election, qr_token, students, clock):
    student = students[2]
    candidate_id = open_election.candidates[0].id
    election_engine.cast_anonymous_vote(qr_token, candidate_id, roll_number=student.roll_number,
                                        now=clock.during)

    with pytest.raises(AlreadyVoted):
        election_engine.cast_vote(student.id, open_election.id, candidate_id, now=clock.during)
    assert db.session.query(Vote).count() == 0
    assert election_engine.has_voted(open_election, student_id=student.id,
                                     roll_number=student.roll_number)


def test_numeric_roll_number(open_election, qr_token, clock):
    vote = election_engine.cast_anonymous_vote(qr_token, open_election.candidates[0].id, roll_number=12345,
                                               now=clock.during)
    assert vote.roll_number == "12345"
    with pytest.raises(AlreadyVoted):
        election_engine.cast_anonymous_vote(qr_token, open_election.candidates[1].id, roll_number="12345",
                                            now=clock.during)


def test_public_ballot(open_election, qr_token, teacher, clock, as_actor):
    candidate_registry.set_approval(as_actor(teacher), open_election.candidates[1].id, False)
    ballot = qr_access_service.public_ballot(qr_token, now=clock.during)

    assert ballot['election']['id'] == open_election.id
    assert ballot['election']['class_name'] == "CSE-2-A"
    assert ballot['election']['state'] == "open"
    assert [c['id'] for c in ballot['candidates']] == [open_election.candidates[0].id]
    assert ballot['require_roll_number'] is True

    with pytest.raises(VotingWindowClosed):
        qr_access_service.public_ballot(qr_token, now=clock.after)


def test_generate_qr(open_election, teacher, as_actor, app_ctx, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'BASE_URL', "https://vote.college.edu/")
    result = qr_access_service.generate_qr(as_actor(teacher), open_election.id)

    assert result['qr_code'].startswith("data:image/png;base64,")
    assert result['voting_url'] == f"https://vote.college.edu/vote/{result['access_token']}"
    assert len(result['access_token']) == 64
    assert result['qr_enabled'] is True
