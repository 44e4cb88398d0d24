from datetime import timedelta

import pytest

from college_election import db
from college_election.database.models import Election, ElectionStatus, ElectionType, LogAction, Role, SystemLog
from college_election.errors import (
    AuthorizationError, ElectionOverlap, InvalidTransition, NotFoundError, StateError, ValidationError,
)
from college_election.notifications.mailer import mailer
from college_election.services.elections import (
    EffectiveState, effective_state, election_engine, is_active,
)


def test_create_election(make_election, school_class, teacher, students, clock):
    election = make_election()

    assert election.status == ElectionStatus.PENDING
    assert election.election_type == ElectionType.CR
    assert election.created_by_id == teacher.id
    assert election.results_published is False
    assert election.qr_enabled is True
    assert effective_state(election, clock.during) == EffectiveState.SCHEDULED

    # Every verified student of the class is told about it
    assert sorted(m['to'] for m in mailer.outbox) == sorted(s.email for s in students)
    assert db.session.query(SystemLog).filter(SystemLog.action == LogAction.ELECTION_CREATE).count() == 1


def test_create_election_window_checks(make_election, clock):
    with pytest.raises(ValidationError, match="future"):
        make_election(start=clock.now - timedelta(minutes=1))
    with pytest.raises(ValidationError, match="after start"):
        make_election(start=clock.now + timedelta(hours=2), end=clock.now + timedelta(hours=2))


def test_create_election_requires_class_teacher(make_election, make_user, admin, other_class, school_class):
    outsider = make_user(Role.TEACHER)
    with pytest.raises(AuthorizationError):
        make_election(by=outsider)
    with pytest.raises(AuthorizationError):
        make_election(by=make_user(Role.STUDENT, school_class))

    # Admins may create elections for any class
    assert make_election(by=admin, school=other_class).class_id == other_class.id


def test_create_election_inactive_class(make_election, school_class):
    school_class.active = False
    db.session.commit()
    with pytest.raises(ValidationError):
        make_election()


def test_create_election_accepts_iso_strings(teacher, school_class, as_actor, clock):
    election = election_engine.create_election(
        as_actor(teacher), title="<b>Board</b> Rep", description="desc", election_type="br",
        class_id=str(school_class.id), start_date="2031-05-02T09:00:00Z", end_date="2031-05-02T17:00:00+00:00",
        now=clock.now)
    assert election.title == "Board Rep"
    assert election.election_type == ElectionType.BR
    assert election.start_date.tzinfo is None
    assert election.start_date.hour == 9


def test_overlapping_elections_rejected(make_election, clock, other_class, admin):
    make_election()
    with pytest.raises(ElectionOverlap):
        make_election(start=clock.now + timedelta(hours=5), end=clock.now + timedelta(hours=20))

    # Back to back is fine only when the windows do not touch
    make_election(start=clock.now + timedelta(hours=11), end=clock.now + timedelta(hours=12))
    # Other classes are independent
    make_election(by=admin, school=other_class)


def test_cancelled_elections_do_not_block(make_election, teacher, as_actor):
    first = make_election()
    election_engine.cancel(as_actor(teacher), first.id)
    assert make_election().id != first.id


def test_effective_state(open_election, clock):
    assert effective_state(open_election, clock.before) == EffectiveState.NOT_STARTED
    assert effective_state(open_election, clock.during) == EffectiveState.OPEN
    assert effective_state(open_election, open_election.start_date) == EffectiveState.OPEN
    assert effective_state(open_election, open_election.end_date) == EffectiveState.OPEN
    assert effective_state(open_election, clock.after) == EffectiveState.ENDED
    assert is_active(open_election, clock.during)
    assert not is_active(open_election, clock.after)


@pytest.mark.parametrize("path,allowed", [
    ((ElectionStatus.ACTIVE,), True),
    ((ElectionStatus.CANCELLED,), True),
    ((ElectionStatus.ACTIVE, ElectionStatus.COMPLETED), True),
    ((ElectionStatus.ACTIVE, ElectionStatus.CANCELLED), True),
    ((ElectionStatus.COMPLETED,), False),
    ((ElectionStatus.PENDING,), False),
    ((ElectionStatus.CANCELLED, ElectionStatus.ACTIVE), False),
    ((ElectionStatus.ACTIVE, ElectionStatus.COMPLETED, ElectionStatus.ACTIVE), False),
])
def test_status_transitions(make_election, teacher, as_actor, clock, path, allowed):
    election = make_election()
    if allowed:
        for status in path:
            election_engine.change_status(as_actor(teacher), election.id, status.value, now=clock.after)
        assert election.status == path[-1]
    else:
        with pytest.raises(InvalidTransition):
            for status in path:
                election_engine.change_status(as_actor(teacher), election.id, status, now=clock.after)


def test_change_status_rejects_unknown(make_election, teacher, as_actor):
    election = make_election()
    with pytest.raises(ValidationError):
        election_engine.change_status(as_actor(teacher), election.id, "paused")


def test_only_managers_change_status(make_election, make_user, admin, as_actor):
    election = make_election()
    with pytest.raises(AuthorizationError):
        election_engine.activate(as_actor(make_user(Role.TEACHER)), election.id)
    assert election_engine.activate(as_actor(admin), election.id).status == ElectionStatus.ACTIVE


def test_update_election(make_election, teacher, as_actor, clock):
    election = make_election()
    new_end = clock.now + timedelta(hours=12)
    updated = election_engine.update_election(as_actor(teacher), election.id, title="CR 2031",
                                              end_date=new_end, now=clock.now)
    assert updated.title == "CR 2031"
    assert updated.end_date == new_end

    with pytest.raises(ValidationError):
        election_engine.update_election(as_actor(teacher), election.id,
                                        end_date=clock.now + timedelta(minutes=30), now=clock.now)


def test_update_election_state_rules(open_election, teacher, as_actor, clock):
    # Text can change while active, dates cannot
    election_engine.update_election(as_actor(teacher), open_election.id, description="Updated", now=clock.during)
    with pytest.raises(StateError):
        election_engine.update_election(as_actor(teacher), open_election.id,
                                        end_date=clock.after + timedelta(hours=1), now=clock.during)

    election_engine.cancel(as_actor(teacher), open_election.id)
    with pytest.raises(StateError):
        election_engine.update_election(as_actor(teacher), open_election.id, title="Too late")


def test_update_election_overlap(make_election, teacher, as_actor, clock):
    make_election()
    later = make_election(start=clock.now + timedelta(hours=11), end=clock.now + timedelta(hours=12))
    with pytest.raises(ElectionOverlap):
        election_engine.update_election(as_actor(teacher), later.id,
                                        start_date=clock.now + timedelta(hours=9), now=clock.now)


def test_delete_election(open_election, teacher, students, clock, as_actor):
    election_id = open_election.id
    election_engine.cast_vote(students[2].id, election_id, open_election.candidates[0].id, now=clock.during)

    with pytest.raises(StateError):
        election_engine.delete_election(as_actor(teacher), election_id)

    election_engine.complete(as_actor(teacher), election_id, now=clock.after)
    assert open_election.winner_id is not None

    election_engine.delete_election(as_actor(teacher), election_id)
    assert db.session.get(Election, election_id) is None
    with pytest.raises(NotFoundError):
        election_engine.get_election(election_id)
    assert db.session.query(SystemLog).filter(SystemLog.action == LogAction.ELECTION_DELETE).count() == 1


def test_list_elections(make_election, admin, other_class, clock):
    make_election(title="Class Rep")
    make_election(by=admin, school=other_class, title="Board Rep")

    assert election_engine.list_elections()['total'] == 2
    assert election_engine.list_elections(class_id=other_class.id)['items'][0].title == "Board Rep"
    assert election_engine.list_elections(search="class")['total'] == 1
    assert election_engine.list_elections(status="active")['total'] == 0
    assert election_engine.list_elections(election_type="CR")['total'] == 2
    with pytest.raises(ValidationError):
        election_engine.list_elections(status="bogus")


def test_elections_for_teacher(make_election, admin, other_class, teacher):
    mine = make_election()
    make_election(by=admin, school=other_class)
    assert election_engine.elections_for_teacher(teacher.id) == [mine]


def test_elections_for_student_buckets(open_election, make_election, students, teacher, clock, as_actor):
    later = make_election(start=clock.now + timedelta(days=2), end=clock.now + timedelta(days=3))
    election_engine.cast_vote(students[2].id, open_election.id, open_election.candidates[0].id, now=clock.during)

    buckets = election_engine.elections_for_student(students[2].id, now=clock.during)
    assert [e['id'] for e in buckets['active']] == [open_election.id]
    assert buckets['active'][0]['has_voted'] is True
    assert [e['id'] for e in buckets['upcoming']] == [later.id]
    assert buckets['past'] == []

    election_engine.cancel(as_actor(teacher), later.id)
    buckets = election_engine.elections_for_student(students[3].id, now=clock.after)
    assert buckets['active'] == []
    assert {e['id'] for e in buckets['past']} == {open_election.id, later.id}
    assert buckets['past'][0]['has_voted'] is False


def test_students_without_class_see_nothing(make_user):
    loner = make_user(Role.STUDENT)
    assert election_engine.elections_for_student(loner.id) == {'active': [], 'upcoming': [], 'past': []}
