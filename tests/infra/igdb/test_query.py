"""APICalypse クエリ組み立てのテスト。"""

from __future__ import annotations

from game_resolver.infra.igdb.query import IGDBQueryBuilder, escape_term


def test_query_clause_order() -> None:
    query = (
        IGDBQueryBuilder()
        .search("Doom")
        .select("id", "name")
        .where("category = 0")
        .where_in("id", [1, 2])
        .limit(10)
        .build()
    )

    assert query.to_apicalypse() == (
        'search "Doom"; fields id, name; where category = 0 & id = (1,2); limit 10;'
    )


def test_where_in_quotes_strings_and_skips_empty() -> None:
    query = IGDBQueryBuilder().where_in("uid", ["a", 'b"c']).where_in("id", []).build()

    assert query.where_clauses == ('uid = ("a","bc")',)


def test_limit_is_clamped_to_service_range() -> None:
    assert IGDBQueryBuilder().limit(900).build().limit_value == 500
    assert IGDBQueryBuilder().limit(0).build().limit_value == 1


def test_blank_search_term_is_dropped() -> None:
    assert IGDBQueryBuilder().search("   ").build().to_apicalypse() == ""


def test_escape_term_strips_quotes() -> None:
    assert escape_term(' say "hi" ') == "say hi"
