from logging.config import fileConfig
from typing import Any

from sqlalchemy import engine_from_config, pool
from sqlalchemy.schema import CreateSchema

from alembic import context  # type: ignore[attr-defined]
from channel_core.config import DATABASE_URL, SCHEMA
from channel_core.db.schema import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Every channel_core model is registered on Base by channel_core.db.schema
target_metadata = Base.metadata
config.set_main_option("sqlalchemy.url", DATABASE_URL)


def include_object(
    object_: Any,
    name: str,
    type_: str,
    reflected: bool,
    compare_to: Any,
) -> bool:
    """Limit autogenerate to tables living in the channel core schema."""
    return getattr(object_, "schema", SCHEMA) == SCHEMA


def _configure_options() -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "include_schemas": True,
        "include_object": include_object,
        "version_table_schema": SCHEMA,
        "compare_type": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL for the configured URL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations against the live database, creating the schema first."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options())
        # The version table lives inside SCHEMA, so it must exist up front
        connection.execute(CreateSchema(SCHEMA, if_not_exists=True))
        connection.commit()

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
