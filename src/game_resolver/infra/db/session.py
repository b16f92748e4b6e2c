"""SQLite エンジンの生成とスキーマ移行。"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.util.exc import CommandError
from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from game_resolver.shared.config import AppSettings, get_settings
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.logging import get_logger

BoundLogger = structlog.stdlib.BoundLogger

_MIGRATIONS_DIR = Path(__file__).parent / "alembic"


class DatabaseError(BaseAppError):
    """スキーマ移行やエンジン生成の失敗。"""

    default_message = "SQLite storage is not usable"
    fatal = True


class DatabaseSessionManager:
    """ドキュメントストア用の SQLite エンジンとセッションファクトリを保持する。

    ストア操作は `asyncio.to_thread` のワーカースレッドから並行して行われるため、
    接続はスレッド間で共有可能にし、WAL と busy_timeout で書き込み競合を待たせる。
    """

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        settings: AppSettings | None = None,
        logger: BoundLogger | None = None,
    ) -> None:
        storage = (settings or get_settings()).storage
        self._db_path = Path(db_path or storage.sqlite_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_ms = int(storage.busy_timeout_seconds * 1000)
        self._logger = logger or get_logger(__name__, component="db", path=str(self._db_path))

        self._engine = create_engine(
            self.url, future=True, connect_args={"check_same_thread": False}
        )
        event.listen(self._engine, "connect", self._configure_connection)
        self._session_factory = sessionmaker(
            self._engine, autoflush=False, expire_on_commit=False, future=True
        )

    @property
    def url(self) -> str:
        return str(URL.create("sqlite", database=str(self._db_path)))

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    def current_revision(self) -> str | None:
        """適用済みの Alembic リビジョン。未初期化なら None。"""

        with self._engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()

    def initialize_schema(self, revision: str = "head") -> str | None:
        """documents テーブルを `revision` まで移行し、移行後のリビジョンを返す。"""

        before = self.current_revision()
        config = Config()
        config.set_main_option("script_location", str(_MIGRATIONS_DIR))
        config.set_main_option("sqlalchemy.url", self.url)
        try:
            with self._engine.begin() as connection:
                config.attributes["connection"] = connection
                command.upgrade(config, revision)
        except (CommandError, SQLAlchemyError) as exc:
            self._logger.error("schema_upgrade_failed", revision=revision, error=str(exc))
            msg = f"Failed to migrate {self._db_path} to {revision}: {exc}"
            raise DatabaseError(msg) from exc

        after = self.current_revision()
        self._logger.info("schema_upgraded", before=before, after=after)
        return after

    def close(self) -> None:
        self._engine.dispose()

    def _configure_connection(
        self, dbapi_conn: sqlite3.Connection, _record: object
    ) -> None:  # pragma: no cover - DBAPI hook
        dbapi_conn.execute("PRAGMA journal_mode = WAL;")
        dbapi_conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms};")


__all__ = ["DatabaseError", "DatabaseSessionManager"]
