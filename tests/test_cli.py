import pytest

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import LogAction, Role, SchoolClass, SystemLog, User


@pytest.fixture
def runner(app_ctx):
    return app_ctx.test_cli_runner()


def test_create_admin(runner):
    result = runner.invoke(args=["create-admin", "--email", "root@college.edu", "--name", "Root",
                                 "--password", "Secret123"])
    assert result.exit_code == 0, result.output
    admin = db.session.query(User).filter(User.email == "root@college.edu").one()
    assert admin.role == Role.ADMIN
    assert admin.is_verified is True

    again = runner.invoke(args=["create-admin", "--email", "root@college.edu", "--password", "Secret123"])
    assert again.exit_code != 0
    assert "already registered" in again.output


def test_seed_classes(runner, admin):
    result = runner.invoke(args=["seed-classes", "--department", "CSE", "--years", "2", "--sections", "A, B"])
    assert result.exit_code == 0, result.output
    assert "4 classes created" in result.output
    names = sorted(c.name for c in db.session.query(SchoolClass))
    assert names == ["CSE-1-A", "CSE-1-B", "CSE-2-A", "CSE-2-B"]

    # Existing classes are skipped
    result = runner.invoke(args=["seed-classes", "--department", "CSE", "--years", "2", "--sections", "A"])
    assert "0 classes created" in result.output


def test_seed_classes_needs_admin(runner):
    result = runner.invoke(args=["seed-classes", "--department", "CSE"])
    assert result.exit_code != 0


def test_verify_audit_log(runner):
    audit_logger.create_log(LogAction.ADMIN_ACTION, None, {"n": 1})
    audit_logger.create_log(LogAction.ADMIN_ACTION, None, {"n": 2})
    assert runner.invoke(args=["verify-audit-log"]).exit_code == 0

    first = db.session.query(SystemLog).order_by(SystemLog.id).first()
    first.details = {"n": 100}
    db.session.commit()
    result = runner.invoke(args=["verify-audit-log"])
    assert result.exit_code == 1
