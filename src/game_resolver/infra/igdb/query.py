"""バッチ取得で使う APICalypse クエリ。"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

GAMES_ENDPOINT = "games"
EXTERNAL_GAMES_ENDPOINT = "external_games"

# GameDigest と Webhook フィルタが参照するフィールド
GAME_FIELDS: tuple[str, ...] = (
    "id",
    "name",
    "slug",
    "summary",
    "category",
    "status",
    "first_release_date",
    "platforms",
    "parent_game",
    "version_parent",
    "follows",
    "hypes",
    "aggregated_rating",
    "total_rating",
    "cover.image_id",
    "release_dates.region",
    "updated_at",
)

EXTERNAL_GAME_FIELDS: tuple[str, ...] = ("id", "game", "uid", "category")


def escape_term(term: str) -> str:
    """APICalypse の文字列リテラルを壊す文字を除く。"""

    return term.replace("\\", " ").replace('"', "").strip()


def _literal(value: int | str) -> str:
    return f'"{escape_term(value)}"' if isinstance(value, str) else str(int(value))


@dataclass(slots=True, frozen=True)
class IGDBQuery:
    """1 リクエスト分の APICalypse 本文。"""

    fields: tuple[str, ...] = ()
    where_clauses: tuple[str, ...] = ()
    limit_value: int | None = None
    search_term: str | None = None

    def to_apicalypse(self) -> str:
        statements: list[str] = []
        if self.search_term:
            statements.append(f'search "{escape_term(self.search_term)}";')
        if self.fields:
            statements.append(f"fields {', '.join(self.fields)};")
        if self.where_clauses:
            statements.append(f"where {' & '.join(self.where_clauses)};")
        if self.limit_value is not None:
            statements.append(f"limit {self.limit_value};")
        return " ".join(statements)


class IGDBQueryBuilder:
    """ID/uid のページ取得とタイトル検索のクエリを組み立てる。"""

    def __init__(self) -> None:
        self._fields: list[str] = []
        self._where: list[str] = []
        self._limit: int | None = None
        self._search: str | None = None

    def select(self, *fields: str) -> IGDBQueryBuilder:
        self._fields.extend(field for field in fields if field)
        return self

    def where(self, clause: str) -> IGDBQueryBuilder:
        if clause:
            self._where.append(clause)
        return self

    def where_in(self, field: str, values: Iterable[int | str]) -> IGDBQueryBuilder:
        """`field = (v1,v2,...)` 条件を追加する。値が空なら何もしない。"""

        rendered = [_literal(value) for value in values]
        if rendered:
            self._where.append(f"{field} = ({','.join(rendered)})")
        return self

    def limit(self, value: int) -> IGDBQueryBuilder:
        # IGDB の 1 リクエスト上限は 500 件
        self._limit = max(1, min(value, 500))
        return self

    def search(self, term: str) -> IGDBQueryBuilder:
        self._search = term.strip() or None
        return self

    def build(self) -> IGDBQuery:
        return IGDBQuery(
            fields=tuple(self._fields),
            where_clauses=tuple(self._where),
            limit_value=self._limit,
            search_term=self._search,
        )


__all__ = [
    "EXTERNAL_GAMES_ENDPOINT",
    "EXTERNAL_GAME_FIELDS",
    "GAMES_ENDPOINT",
    "GAME_FIELDS",
    "IGDBQuery",
    "IGDBQueryBuilder",
    "escape_term",
]
