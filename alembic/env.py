from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from dealercrm.core.config import get_settings
from dealercrm.core.database import Base
import dealercrm.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    # DATABASE_URL (or .env) wins over the ini default, same as the running API
    return get_settings().database_url or config.get_main_option("sqlalchemy.url")


def _configure_options(url: str) -> dict:
    # sqlite cannot ALTER most constraints in place; batch mode copies the table
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = database_url()
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options(url))

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
