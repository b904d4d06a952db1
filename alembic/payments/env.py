from alembic import context
from sqlalchemy import engine_from_config, pool

from storepay.common.config import settings
from storepay.common.db import Base
from storepay.services.ledger import models as ledger_models  # noqa: F401
from storepay.services.notification import models as notification_models  # noqa: F401
from storepay.services.orders import models as order_models  # noqa: F401
from storepay.services.payments import models as payment_models  # noqa: F401
from storepay.services.settings import models as settings_models  # noqa: F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.database_url)
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""

    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
