# migrations/env.py
from __future__ import annotations

from logging.config import fileConfig
import sys
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# --- Project root on sys.path ---
BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.append(str(BASE_DIR))

from loyalty_core.core.config import settings
from loyalty_core.db.session import Base

# Every model module must be imported so Base.metadata is complete.
from loyalty_core.models import program       # noqa: F401  # LoyaltyProgram
from loyalty_core.models import enrollment    # noqa: F401  # Enrollment, ApprovalRequest
from loyalty_core.models import card          # noqa: F401  # LoyaltyCard
from loyalty_core.models import ledger        # noqa: F401  # PointTransaction
from loyalty_core.models import notification  # noqa: F401  # NotificationEvent
from loyalty_core.models import scan_log      # noqa: F401  # QRScanLog

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Alembic always runs on a sync driver.
alembic_url = settings.DATABASE_URL
if alembic_url.startswith("postgresql+asyncpg") or alembic_url.startswith("postgresql://"):
    alembic_url = alembic_url.replace("+asyncpg", "+psycopg").replace("postgresql://", "postgresql+psycopg://", 1)
elif alembic_url.startswith("sqlite+aiosqlite"):
    alembic_url = alembic_url.replace("+aiosqlite", "", 1)

config.set_main_option("sqlalchemy.url", alembic_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=alembic_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
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
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
