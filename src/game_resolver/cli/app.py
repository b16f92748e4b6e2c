from __future__ import annotations

import typer

from game_resolver.cli.commands import db, igdb, reconcile, webhook
from game_resolver.shared.config import get_settings
from game_resolver.shared.exceptions import ConfigurationError
from game_resolver.shared.logging import configure_logging

app = typer.Typer(help="ストアエントリを IGDB の正準レコードへ解決するツールの CLI")

app.add_typer(igdb.app, name="igdb", help="IGDB 関連の操作")
app.add_typer(reconcile.app, name="reconcile", help="未解決エントリの再照合")
app.add_typer(webhook.app, name="webhook", help="IGDB Webhook の処理")
app.add_typer(db.app, name="db", help="ドキュメントストアの管理")


def main() -> None:
    """エントリポイント。"""

    try:
        settings = get_settings()
    except ConfigurationError:
        configure_logging()
    else:
        configure_logging(settings.log_level, json_output=settings.log_json)
    app()


if __name__ == "__main__":  # pragma: no cover - CLI エントリ
    main()
