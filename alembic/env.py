from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

from dealerbooks.config import get_settings
from dealerbooks.db import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# No PRAGMA foreign_keys here: batch mode copies and drops referenced tables
connectable = create_engine(
    f"sqlite:///{get_settings().database_path}", poolclass=pool.NullPool
)

with connectable.connect() as connection:
    context.configure(
        connection=connection,
        target_metadata=Base.metadata,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()
