from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from app.core.config import DATABASE_URL

logger = logging.getLogger(__name__)
MIGRATIONS_PREFIX = "[MIGRATIONS]"

REQUIRED_TABLES = (
    "tenants",
    "whatsapp_config",
    "agent_configs",
    "products",
    "conversations",
    "conversation_messages",
    "whatsapp_orders",
)


def _environment() -> str:
    return os.getenv("ENVIRONMENT", os.getenv("ENV", "dev")).strip().lower()


def _alembic_config(alembic_config_path: Path) -> Config:
    if not alembic_config_path.exists():
        logger.critical("%s alembic config not found path=%s", MIGRATIONS_PREFIX, alembic_config_path)
        raise RuntimeError("alembic config not found")
    alembic_cfg = Config(str(alembic_config_path))
    alembic_cfg.set_main_option("script_location", str(alembic_config_path.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def validate_database_environment() -> None:
    if _environment() in {"prod", "production"} and DATABASE_URL.startswith("sqlite"):
        logger.critical("%s SQLite is forbidden in production", MIGRATIONS_PREFIX)
        raise RuntimeError("SQLite is forbidden in production environment")


def apply_migrations(*, alembic_config_path: Path) -> None:
    """Upgrade to head when AUTO_APPLY_MIGRATIONS is on (default on in production)."""
    auto_apply_raw = os.getenv("AUTO_APPLY_MIGRATIONS", "").strip().lower()
    if auto_apply_raw in {"0", "false", "no", "off"}:
        logger.info("%s auto migration disabled by AUTO_APPLY_MIGRATIONS", MIGRATIONS_PREFIX)
        return

    should_auto_apply = auto_apply_raw in {"1", "true", "yes", "on"} or (
        auto_apply_raw == "" and _environment() in {"prod", "production"}
    )
    if not should_auto_apply:
        logger.info("%s auto migration skipped env=%s", MIGRATIONS_PREFIX, _environment())
        return

    logger.info("%s applying migrations to head", MIGRATIONS_PREFIX)
    try:
        command.upgrade(_alembic_config(alembic_config_path), "head")
    except Exception as exc:
        logger.critical("%s migration apply failed: %s", MIGRATIONS_PREFIX, exc)
        raise RuntimeError("Automatic migration failed") from exc
    logger.info("%s migrations applied", MIGRATIONS_PREFIX)


def ensure_required_tables(*, engine: Engine) -> None:
    inspector = inspect(engine)
    missing = [table for table in REQUIRED_TABLES if not inspector.has_table(table)]
    if missing:
        logger.critical("%s tables missing: %s", MIGRATIONS_PREFIX, ",".join(sorted(missing)))
        raise RuntimeError("tables missing / migrations not applied")


def ensure_migrations_applied(*, engine: Engine, alembic_config_path: Path) -> None:
    if _environment() == "test":
        logger.info("%s skipped migration check in test environment", MIGRATIONS_PREFIX)
        return
    if DATABASE_URL.startswith("sqlite"):
        # dev databases are built with create_all and carry no alembic_version
        ensure_required_tables(engine=engine)
        logger.info("%s sqlite schema verified", MIGRATIONS_PREFIX)
        return

    script_directory = ScriptDirectory.from_config(_alembic_config(alembic_config_path))
    expected_heads = set(script_directory.get_heads())

    with engine.connect() as connection:
        inspector = inspect(connection)
        if "alembic_version" not in inspector.get_table_names():
            logger.critical("%s alembic_version table missing", MIGRATIONS_PREFIX)
            raise RuntimeError("Database has no migration state")
        current_rows = connection.exec_driver_sql("SELECT version_num FROM alembic_version").fetchall()

    current_heads = {row[0] for row in current_rows if row and row[0]}
    if current_heads != expected_heads:
        logger.critical(
            "%s pending migration detected current=%s expected=%s",
            MIGRATIONS_PREFIX,
            sorted(current_heads),
            sorted(expected_heads),
        )
        raise RuntimeError("Pending migrations detected")

    logger.info("%s migration state verified", MIGRATIONS_PREFIX)
