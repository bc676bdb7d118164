"""Tests for the ConnectWise condition builder."""

import pytest
from datetime import date, datetime, timedelta, timezone

from msp_sync.core.conditions import (
    And,
    Field,
    Or,
    all_of,
    any_of,
    format_value,
    in_list,
    render,
)


def test_format_value_strings_are_quoted_and_escaped():
    assert format_value("jdoe") == '"jdoe"'
    assert format_value('say "hi"') == '"say \\"hi\\""'
    assert format_value("back\\slash") == '"back\\\\slash"'


def test_format_value_booleans_and_numbers():
    assert format_value(True) == "true"
    assert format_value(False) == "false"
    assert format_value(42) == "42"
    assert format_value(1.5) == "1.5"


def test_format_value_datetimes():
    assert format_value(datetime(2024, 1, 2, 3, 4, 5)) == "[2024-01-02T03:04:05Z]"
    aware = datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))
    assert format_value(aware) == "[2024-01-02T03:04:05Z]"
    assert format_value(date(2024, 1, 2)) == "[2024-01-02T00:00:00Z]"


def test_field_comparisons():
    assert Field("inactiveFlag").eq(False).render() == "inactiveFlag=false"
    assert Field("id").ne(3).render() == "id!=3"
    assert Field("timeStart").gte(datetime(2024, 1, 1)).render() == "timeStart>=[2024-01-01T00:00:00Z]"
    assert Field("hours").lt(2).render() == "hours<2"


def test_in_and_like():
    assert Field("board/id").in_([1, 2, 3]).render() == "board/id in (1,2,3)"
    assert Field("resources").contains("jdoe").render() == 'resources like "%jdoe%"'


def test_empty_in_list_raises_but_helper_returns_none():
    with pytest.raises(ValueError):
        Field("id").in_([])
    assert in_list("id", []) is None
    assert in_list("id", [5]).render() == "id in (5)"


def test_or_nested_in_and_is_parenthesized():
    condition = all_of(
        Field("board/id").in_([1, 2]),
        Field("owner/identifier").eq("x") | Field("resources").contains("x"),
        Field("_info/lastUpdated").gt(datetime(2024, 5, 1, 12, 0, 0)),
    )
    assert condition.render() == (
        'board/id in (1,2) AND (owner/identifier="x" OR resources like "%x%") '
        "AND _info/lastUpdated>[2024-05-01T12:00:00Z]"
    )


def test_and_operator():
    condition = Field("type").eq("Project") & Field("id").eq(5)
    assert condition.render() == 'type="Project" AND id=5'


def test_same_operator_children_are_flattened():
    condition = And(And(Field("a").eq(1), Field("b").eq(2)), Field("c").eq(3))
    assert condition.render() == "a=1 AND b=2 AND c=3"
    assert len(condition.parts) == 3


def test_single_part_compound_is_not_parenthesized():
    condition = And(Field("a").eq(1), Or(Field("b").eq(2)))
    assert condition.render() == "a=1 AND b=2"


def test_all_of_and_any_of_ignore_none():
    assert all_of(None, None) is None
    single = Field("a").eq(1)
    assert all_of(None, single) is single
    assert any_of(single, None) is single
    assert render(None) is None
    assert str(any_of(Field("a").eq(1), Field("b").eq(2))) == "a=1 OR b=2"


def test_unsupported_operator():
    from msp_sync.core.conditions import Comparison

    with pytest.raises(ValueError):
        Comparison("a", "~", 1)
