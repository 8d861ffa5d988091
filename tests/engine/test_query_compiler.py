from __future__ import annotations

import pytest

from catalog_mirror.engine.query import (
    NEVER_MATCH,
    QueryCompiler,
    date_range,
    order_by,
    tokenize,
    widen_number,
)


@pytest.fixture
def compiler() -> QueryCompiler:
    return QueryCompiler()


@pytest.mark.parametrize(
    ("literal", "expected"),
    [("5", (5.0, 5.99)), ("5.5", (5.5, 5.59)), ("5.55", (5.55, 5.55)), ("0.5", (0.5, 0.59))],
)
def test_widen_number(literal: str, expected: tuple[float, float]) -> None:
    assert widen_number(literal) == pytest.approx(expected)


def test_numeric_equality_is_widened(compiler) -> None:
    compiled = compiler.compile("stars=5")
    assert compiled.where == "(i.stars BETWEEN ? AND ?)"
    assert compiled.params == pytest.approx([5.0, 5.99])

    compiled = compiler.compile("stars=5.5")
    assert compiled.params == pytest.approx([5.5, 5.59])


def test_numeric_comparison_and_range(compiler) -> None:
    compiled = compiler.compile("bpm >= 180")
    assert compiled.where == "i.bpm >= ?"
    assert compiled.params == [180.0]

    compiled = compiler.compile("length=90-60")
    assert compiled.where == "(i.length BETWEEN ? AND ?)"
    assert compiled.params == [60.0, 90.0]


def test_year_filter_covers_the_whole_year(compiler) -> None:
    compiled = compiler.compile("year=2023")
    assert compiled.params == [1672531200, 1704067200]
    assert "s.time_ranked >= ?" in compiled.where


def test_year_range_spans_both_years(compiler) -> None:
    compiled = compiler.compile("year=2019-2021")
    assert compiled.params == [1546300800, 1640995200]


def test_date_comparisons(compiler) -> None:
    assert compiler.compile("ranked<2020").params == [1577836800]
    assert compiler.compile("ranked>2019").params == [1577836800]
    assert date_range("2020-02") == (1580515200, 1583020800)
    assert date_range("2020-12-31") == (1609372800, 1609459200)


def test_duplicate_equality_filters_keep_the_first(compiler) -> None:
    compiled = compiler.compile("mode=mania mode=osu")
    assert compiled.where == "(i.mode = ?)"
    assert compiled.params == [3]


def test_status_list_is_ored(compiler) -> None:
    compiled = compiler.compile("status=ranked,loved")
    assert compiled.where == "(i.status = ? OR i.status = ?)"
    assert compiled.params == [1, 4]


def test_keys_implies_mania(compiler) -> None:
    compiled = compiler.compile("keys=4")
    assert compiled.where == "(i.cs BETWEEN ? AND ?) AND (i.mode = ?)"
    assert compiled.params == pytest.approx([4.0, 4.99, 3])


@pytest.mark.parametrize("query", ["stars=abc", "mode=banana", "year=soon", "pack=x"])
def test_malformed_values_never_match(compiler, query: str) -> None:
    compiled = compiler.compile(query)
    assert compiled.where == NEVER_MATCH
    assert compiled.params == []


def test_string_equality_becomes_column_scoped_match(compiler) -> None:
    compiled = compiler.compile('artist="koral reef"')
    assert compiled.join_search
    assert compiled.match_expression == '{artist artist_unicode} : "koral reef"'
    assert compiled.where == "catalog_search MATCH ?"
    assert compiled.params == [compiled.match_expression]


def test_string_inequality_compares_lexically(compiler) -> None:
    compiled = compiler.compile("title>m")
    assert compiled.where == "s.title > ?"
    assert compiled.params == ["m"]
    assert not compiled.join_search


def test_free_text_and_unknown_fields_are_quoted_terms(compiler) -> None:
    compiled = compiler.compile('camellia "ghost rule" foo=bar')
    assert compiled.text_query == '"camellia" "ghost rule" "foo=bar"'
    assert compiled.params == [compiled.text_query]


def test_user_text_never_reaches_sql(compiler) -> None:
    compiled = compiler.compile("'; DROP TABLE sets; --")
    assert "DROP" not in compiled.where
    assert any("DROP" in str(param) for param in compiled.params)


def test_pack_filter_requests_pack_joins(compiler) -> None:
    compiled = compiler.compile("pack=3")
    assert compiled.join_packs
    assert compiled.where == "(p.id = ?)"
    assert "JOIN packs p" in compiled.from_clause


def test_tokenizer_tolerates_spaces_around_operators() -> None:
    tokens = list(tokenize("stars >= 5 camellia"))
    assert [(token.kind, token.text) for token in tokens] == [
        ("FIELD", "stars"),
        ("OP", ">="),
        ("VALUE", "5"),
        ("TERM", "camellia"),
    ]


def test_order_by(compiler) -> None:
    plain = compiler.compile("stars>5")
    searched = compiler.compile("camellia")
    assert order_by("auto", plain) == "MAX(time_ranked) DESC, set_id DESC"
    assert order_by("auto", searched).startswith("MIN(match_rank) ASC")
    assert order_by("stars_asc", plain) == "MIN(stars) ASC, set_id DESC"
    with pytest.raises(ValueError):
        order_by("popularity", plain)
