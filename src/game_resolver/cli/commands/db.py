from __future__ import annotations

from typing import Annotated

import typer

from game_resolver.infra.db.session import DatabaseSessionManager
from game_resolver.shared.config import get_settings
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.logging import get_logger

app = typer.Typer(help="ドキュメントストアの管理")


@app.command("init")
def init(
    revision: Annotated[
        str, typer.Option("--revision", "-r", help="適用する Alembic リビジョン")
    ] = "head",
) -> None:
    """documents テーブルを作成・移行する。"""

    logger = get_logger("cli.db.init", revision=revision)
    try:
        manager = DatabaseSessionManager(settings=get_settings())
    except BaseAppError as exc:
        logger.error("db_context_failed", error=str(exc))
        typer.echo(f"設定の読み込みに失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        applied = manager.initialize_schema(revision)
    except BaseAppError as exc:
        typer.echo(f"スキーマの移行に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        manager.close()
    typer.echo(f"{manager.url} のスキーマは {applied or '(なし)'} です")
