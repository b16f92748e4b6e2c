from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from game_resolver.cli.runtime import Runtime, build_runtime
from game_resolver.core.reconcile.reconciler import ReconcileScheduler, ReconReport
from game_resolver.shared.config import get_settings
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.logging import get_logger
from game_resolver.shared.types import UserID

app = typer.Typer(help="未解決エントリの再照合")


def _render_reports(reports: Iterable[ReconReport]) -> None:
    console = Console(force_terminal=False, color_system=None)
    table = Table(title="Reconciliation")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Unknown → Approval", justify="right")
    table.add_column("Unknown → Resolved", justify="right")
    table.add_column("Approval → Resolved", justify="right")
    table.add_column("Approval → Unknown", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Errors", justify="right")

    for report in reports:
        table.add_row(
            report.user_id,
            str(report.unknown_to_approval),
            str(report.unknown_to_resolved),
            str(report.approval_to_resolved),
            str(report.approval_to_unknown),
            str(report.unchanged),
            str(report.errors),
        )

    console.print(table)


async def _run(
    runtime: Runtime, user_ids: list[UserID], *, watch: bool, passes: int | None
) -> list[ReconReport]:
    if not watch:
        return await runtime.reconciler.run_all(user_ids)
    scheduler = ReconcileScheduler(
        reconciler=runtime.reconciler,
        interval_seconds=runtime.settings.reconciler.interval_seconds,
    )
    return await scheduler.run_forever(user_ids, max_passes=passes)


@app.command("run")
def run(
    users: Annotated[list[str], typer.Option("--user", "-u", help="対象ユーザー ID (複数指定可)")],
    watch: Annotated[
        bool, typer.Option("--watch", "-w", help="設定間隔で再照合を繰り返す")
    ] = False,
    passes: Annotated[
        int | None, typer.Option("--passes", min=1, help="--watch 時の実行回数上限")
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="結果を保存せずメモリ上で実行する")
    ] = False,
) -> None:
    """ユーザーの未解決キューを再照合し、遷移件数を表示する。"""

    logger = get_logger("cli.reconcile.run", users=len(users), watch=watch)
    user_ids = [UserID(user) for user in users]

    try:
        runtime = build_runtime(get_settings(), dry_run=dry_run)
    except BaseAppError as exc:
        logger.error("reconcile_context_failed", error=str(exc))
        typer.echo(f"設定の読み込みに失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        reports = asyncio.run(_run(runtime, user_ids, watch=watch, passes=passes))
    except BaseAppError as exc:
        logger.error("reconcile_aborted", error_type=exc.__class__.__name__, error=str(exc))
        typer.echo(f"再照合を中断しました: {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        runtime.close()

    _render_reports(reports)
    if any(report.errors for report in reports):
        raise typer.Exit(code=1)
