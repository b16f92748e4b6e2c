from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from enum import Enum
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from game_resolver.cli.runtime import build_runtime
from game_resolver.core.resolution.models import ScoredCandidate, SearchHints
from game_resolver.infra.igdb.errors import IGDBClientError, IGDBRateLimitError
from game_resolver.shared.config import get_settings
from game_resolver.shared.exceptions import ConfigurationError
from game_resolver.shared.logging import get_logger


class OutputFormat(str, Enum):
    """出力形式。"""

    TABLE = "table"
    JSON = "json"


app = typer.Typer(help="IGDB の検索コマンド")


def _format_sequence(values: Iterable[int]) -> str:
    values = tuple(values)
    return ", ".join(str(item) for item in values) if values else "-"


def _candidate_to_dict(candidate: ScoredCandidate) -> dict[str, object]:
    digest = candidate.digest
    return {
        "id": digest.id,
        "name": digest.name,
        "score": candidate.score,
        "popularity": digest.popularity,
        "release_year": digest.release_year,
        "category": digest.category,
        "platforms": list(digest.platforms),
    }


def _render_table(title: str, candidates: Iterable[ScoredCandidate]) -> None:
    console = Console(force_terminal=False, color_system=None)
    table = Table(title=f"Candidates for {title!r}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Popularity", justify="right")
    table.add_column("Year")
    table.add_column("Platforms")

    for candidate in candidates:
        digest = candidate.digest
        table.add_row(
            str(digest.id),
            digest.name,
            f"{candidate.score:.4f}",
            str(digest.popularity),
            str(digest.release_year) if digest.release_year else "-",
            _format_sequence(digest.platforms),
        )

    console.print(table)


def _render_json(candidates: Iterable[ScoredCandidate]) -> None:
    payload = [_candidate_to_dict(item) for item in candidates]
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command()
def search(  # noqa: PLR0913 - CLI のため引数が多い
    title: Annotated[str, typer.Option("--title", "-t", help="検索するゲームタイトル")] = ...,
    year: Annotated[int | None, typer.Option("--year", "-y", help="発売年のヒント")] = None,
    storefront: Annotated[
        str | None, typer.Option("--storefront", "-s", help="steam/gog/egs などのストアフロント")
    ] = None,
    platform: Annotated[
        list[int] | None, typer.Option("--platform", "-p", help="IGDB プラットフォーム ID")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", min=1, max=50, help="表示する件数")] = 10,
    output: Annotated[
        OutputFormat,
        typer.Option(
            "--output",
            "-f",
            case_sensitive=False,
            help="出力形式(table/json)",
        ),
    ] = OutputFormat.TABLE,
) -> None:
    """タイトル検索を実行し、順位付け済みの候補を表示する。"""

    logger = get_logger("cli.igdb.search", title=title)
    hints = SearchHints(
        platforms=frozenset(platform or ()),
        storefront=storefront.lower() if storefront else None,
        release_year=year,
    )

    try:
        runtime = build_runtime(get_settings(), dry_run=True)
        candidates = asyncio.run(runtime.search.search(title, hints))
    except ConfigurationError as exc:
        typer.echo(f"設定が不正です: {exc}")
        raise typer.Exit(code=2) from exc
    except IGDBRateLimitError as exc:
        logger.warning("igdb_rate_limited", error=str(exc))
        typer.echo("IGDB API のレート制限に到達しました。時間をおいて再実行してください。")
        raise typer.Exit(code=2) from exc
    except IGDBClientError as exc:
        logger.error("igdb_search_failed", error=str(exc))
        typer.echo(f"IGDB 検索に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    shown = candidates[:limit]
    logger.info("igdb_search_rendered", results=len(shown))
    if output is OutputFormat.JSON:
        _render_json(shown)
    else:
        _render_table(title, shown)
