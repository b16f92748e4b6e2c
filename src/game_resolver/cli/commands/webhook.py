from __future__ import annotations

import asyncio
import json
from collections import Counter
from collections.abc import Iterable
from pathlib import Path
from typing import Annotated, Any

import typer

from game_resolver.cli.runtime import build_runtime
from game_resolver.core.webhooks.pipeline import WebhookEntity, WebhookOutcome, WebhookResult
from game_resolver.shared.config import get_settings
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.logging import get_logger

app = typer.Typer(help="IGDB Webhook の処理")


def _load_payloads(path: Path) -> list[dict[str, Any]]:
    try:
        decoded = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"ペイロードを読み込めませんでした: {exc}")
        raise typer.Exit(code=1) from exc
    payloads = decoded if isinstance(decoded, list) else [decoded]
    if not all(isinstance(item, dict) for item in payloads):
        typer.echo("ペイロードはオブジェクトまたはオブジェクトの配列である必要があります")
        raise typer.Exit(code=1)
    return payloads


def _summarize(results: Iterable[WebhookResult]) -> None:
    counts = Counter(result.outcome for result in results)
    for outcome in WebhookOutcome:
        typer.echo(f"{outcome.value}: {counts.get(outcome, 0)}")


@app.command()
def handle(
    payload_file: Annotated[
        Path, typer.Argument(exists=True, dir_okay=False, help="Webhook ペイロードの JSON")
    ],
    entity: Annotated[
        WebhookEntity,
        typer.Option("--entity", help="ペイロードのエンティティ種別 (games / external_games)"),
    ] = WebhookEntity.GAME,
) -> None:
    """保存済みの Webhook ペイロードをパイプラインへ流す。"""

    logger = get_logger("cli.webhook.handle", path=str(payload_file), entity=entity.value)
    payloads = _load_payloads(payload_file)
    try:
        runtime = build_runtime(get_settings())
    except BaseAppError as exc:
        logger.error("webhook_context_failed", error=str(exc))
        typer.echo(f"設定の読み込みに失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    async def _handle_all() -> list[WebhookResult]:
        return [await runtime.pipeline.handle(payload, entity) for payload in payloads]

    try:
        results = asyncio.run(_handle_all())
    finally:
        runtime.close()
    _summarize(results)


@app.command()
def replay() -> None:
    """失敗キューの Webhook を再処理する。"""

    logger = get_logger("cli.webhook.replay")
    try:
        runtime = build_runtime(get_settings())
    except BaseAppError as exc:
        logger.error("webhook_context_failed", error=str(exc))
        typer.echo(f"設定の読み込みに失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        results = asyncio.run(runtime.pipeline.replay())
    finally:
        runtime.close()

    if not results:
        typer.echo("再処理対象はありません")
        return
    _summarize(results)
    if any(result.outcome is WebhookOutcome.FAILED for result in results):
        raise typer.Exit(code=1)
