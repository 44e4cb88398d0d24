# college_election/database/migrations/env.py

from logging.config import fileConfig
import os
from alembic import context

from college_election import db
from college_election.database.models import (  # noqa: F401
    AnonymousVote, Candidate, Election, SchoolClass, SystemLog, User, Vote, VotingTimeSlot,
)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
target_metadata = db.metadata


def run_migrations_offline():
    url = os.getenv('DATABASE_URL', 'sqlite:///college_election.db')
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=url.startswith('sqlite'),
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = db.engine
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == 'sqlite',
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
