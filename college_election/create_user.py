# college_election/create_user.py
# Flask CLI commands for bootstrapping and maintenance:
#   flask --app college_election create-admin --email admin@college.edu --name "Admin"
#   flask --app college_election seed-classes --department CSE --years 4 --sections A,B
#   flask --app college_election create-backup
#   flask --app college_election verify-audit-log

import sys

import click

from college_election import app, db
from college_election.audit.audit_logger import audit_logger
from college_election.authentication.identity import identity_service
from college_election.authentication.rbac import AuthContext
from college_election.database.models import Role, SchoolClass, User
from college_election.errors import ElectionSystemError
from college_election.operations.backup_manager import perform_backup


def _first_admin():
    admin = db.session.query(User).filter(User.role == Role.ADMIN).order_by(User.id).first()
    return AuthContext.for_user(admin) if admin else None


@app.cli.command('create-admin')
@click.option('--name', default='Administrator', show_default=True)
@click.option('--email', required=True)
@click.password_option()
def create_admin(name, email, password):
    """Create a verified admin account."""
    try:
        user = identity_service.create_user(_first_admin(), name=name, email=email, password=password,
                                            role=Role.ADMIN, verified=True)
    except ElectionSystemError as e:
        raise click.ClickException(e.message)
    click.echo(f"Admin created: {user.email} (id {user.id})")


@app.cli.command('seed-classes')
@click.option('--department', required=True)
@click.option('--years', default=4, show_default=True, type=int)
@click.option('--sections', default='A', show_default=True, help='Comma separated section names')
def seed_classes(department, years, sections):
    """Create DEPARTMENT-YEAR-SECTION classes that do not exist yet."""
    from college_election.services.classes import class_registry

    actor = _first_admin()
    if actor is None:
        raise click.ClickException("Create an admin first (flask create-admin)")
    created = 0
    for year in range(1, years + 1):
        for section in filter(None, map(str.strip, sections.split(','))):
            name = f"{department}-{year}-{section}"
            if db.session.query(SchoolClass.id).filter(SchoolClass.name == name).first():
                continue
            class_registry.create_class(actor, name=name, department=department, year=year, section=section)
            created += 1
    click.echo(f"{created} classes created")


@app.cli.command('create-backup')
def create_backup():
    """Write an encrypted snapshot to BACKUP_OUTDIR."""
    result = perform_backup(_first_admin())
    if not result['success']:
        raise click.ClickException(f"Backup failed: {result.get('error')}")
    click.echo(f"Backup created: {result['file_name']}")


@app.cli.command('verify-audit-log')
def verify_audit_log():
    """Walk the audit hash chain; exit 1 if it is broken."""
    if audit_logger.verify_log_integrity():
        click.echo("Audit log intact")
    else:
        click.echo("Audit log integrity check FAILED", err=True)
        sys.exit(1)
