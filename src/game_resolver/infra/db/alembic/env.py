"""documents テーブルの移行環境。

`DatabaseSessionManager.initialize_schema` からは接続を `config.attributes` で受け取り、
`alembic` コマンドから直接実行された場合は ini の URL でエンジンを作る。
"""

from __future__ import annotations

from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import Connection, make_url

from game_resolver.infra.db.models import Base

config = context.config
target_metadata = Base.metadata

# CLI 経由のときは structlog の設定を ini のロガー設定で上書きしない
if config.config_file_name is not None and "connection" not in config.attributes:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _migrate(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    shared = config.attributes.get("connection")
    if shared is not None:
        _migrate(shared)
        return

    database = make_url(config.get_main_option("sqlalchemy.url")).database
    if database:
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    # SQLite では明示的に begin しないと alembic_version の更新がロールバックされる
    with connectable.begin() as connection:
        _migrate(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
