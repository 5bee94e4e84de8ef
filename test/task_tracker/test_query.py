"""
Tests for the query builders: predicates, search capabilities, sort
resolution, page clamping and SET clause construction. None of these touch a
database.
"""

from datetime import date

import pytest

from task_tracker.errors import InvalidSortField, ValidationFault
from task_tracker.query import (
    TASK_MUTABLE_FIELDS,
    USER_MUTABLE_FIELDS,
    ContainsSearch,
    FullTextSearch,
    TaskFilter,
    build_set_clause,
    build_task_predicates,
    clamp_page,
    parse_assignees,
    resolve_sort,
    split_csv,
)


class TestPredicateBuilder:
    """Filter request -> WHERE fragments and bound values."""

    def test_no_filters_produces_no_fragments(self):
        fragments, values = build_task_predicates(TaskFilter())
        assert fragments == []
        assert values == []

    def test_empty_sets_equal_absent_filters(self):
        fragments, values = build_task_predicates(
            TaskFilter(status=[], priority=[], assigned_to=[], search="   ")
        )
        assert fragments == []
        assert values == []

    def test_status_and_priority_use_set_membership(self):
        fragments, values = build_task_predicates(
            TaskFilter(status=["todo", "in-progress"], priority=["high"])
        )
        assert fragments == ["t.status IN (?, ?)", "t.priority IN (?)"]
        assert values == ["todo", "in-progress", "high"]

    def test_duplicate_filter_values_are_bound_once(self):
        fragments, values = build_task_predicates(TaskFilter(status=["done", "done"]))
        assert fragments == ["t.status IN (?)"]
        assert values == ["done"]

    def test_assigned_ids_and_sentinel_combine_with_or(self):
        fragments, values = build_task_predicates(TaskFilter(assigned_to=[1, "null", 3]))
        assert fragments == ["(t.assigned_to IN (?, ?) OR t.assigned_to IS NULL)"]
        assert values == [1, 3]

    def test_sentinel_alone_selects_unassigned(self):
        fragments, values = build_task_predicates(TaskFilter(assigned_to=["null"]))
        assert fragments == ["t.assigned_to IS NULL"]
        assert values == []

    def test_invalid_assignees_are_dropped_not_rejected(self):
        fragments, values = build_task_predicates(TaskFilter(assigned_to=["abc", "", "-2", 0]))
        assert fragments == []
        assert values == []

    def test_due_date_bounds_are_inclusive(self):
        fragments, values = build_task_predicates(
            TaskFilter(due_date_from=date(2024, 1, 1), due_date_to="2024-12-31")
        )
        assert fragments == ["t.due_date >= ?", "t.due_date <= ?"]
        assert values == ["2024-01-01", "2024-12-31"]

    def test_malformed_date_is_a_validation_fault(self):
        with pytest.raises(ValidationFault):
            build_task_predicates(TaskFilter(due_date_from="next tuesday"))

    @pytest.mark.parametrize("bad", ["2024-03-01garbage", "2024-03-01T10:00:00junk", "2024-13-01"])
    def test_trailing_text_after_date_is_rejected(self, bad):
        with pytest.raises(ValidationFault):
            build_task_predicates(TaskFilter(due_date_to=bad))

    def test_values_are_never_interpolated(self):
        hostile = "x'); DROP TABLE tasks; --"
        fragments, values = build_task_predicates(
            TaskFilter(status=[hostile], search=hostile), ContainsSearch()
        )
        assert all(hostile not in fragment for fragment in fragments)
        assert hostile in values

    def test_search_uses_supplied_capability(self):
        fragments, values = build_task_predicates(
            TaskFilter(search="  login bug "), FullTextSearch()
        )
        assert fragments == ["t.id IN (SELECT rowid FROM tasks_fts WHERE tasks_fts MATCH ?)"]
        assert values == ['"login" "bug"']


class TestAssigneeParsing:

    def test_parse_mixed_values(self):
        assert parse_assignees(["2", "null", 5, "2", "x"]) == ([2, 5], True)

    def test_parse_ignores_booleans(self):
        assert parse_assignees([True, False]) == ([], False)

    def test_parse_none(self):
        assert parse_assignees(None) == ([], False)


class TestSearchPredicates:

    def test_fulltext_quotes_tokens_so_operators_are_inert(self):
        fragment, values = FullTextSearch().build('title:"x" OR NEAR(y*)')
        assert values == ['"title" "x" "OR" "NEAR" "y"']

    def test_fulltext_punctuation_only_matches_nothing(self):
        assert FullTextSearch().build("!!!") == ("1 = 0", [])

    def test_contains_requires_every_term(self):
        fragment, values = ContainsSearch().build("login page")
        assert fragment.count("LIKE ?") == 4
        assert " AND " in fragment
        assert values == ["%login%", "%login%", "%page%", "%page%"]

    def test_contains_escapes_wildcards(self):
        _, values = ContainsSearch().build("100%_done")
        assert values[0] == "%100\\%\\_done%"


class TestSortResolver:

    def test_default_is_created_at_descending_with_tie_break(self):
        assert resolve_sort() == "ORDER BY t.created_at DESC, t.id DESC"

    def test_tie_break_follows_direction(self):
        assert resolve_sort("due_date", "asc") == "ORDER BY t.due_date ASC, t.id ASC"

    def test_unknown_order_means_descending(self):
        assert resolve_sort("title", "sideways") == "ORDER BY t.title DESC, t.id DESC"

    def test_priority_sorts_by_rank(self):
        clause = resolve_sort("priority", "asc")
        assert clause.startswith("ORDER BY CASE t.priority WHEN 'low' THEN 1")
        assert clause.endswith("t.id ASC")

    def test_id_sort_has_no_redundant_tie_break(self):
        assert resolve_sort("id", "ASC") == "ORDER BY t.id ASC"

    @pytest.mark.parametrize("bad", ["not_a_field", "t.id; DROP TABLE tasks", "status"])
    def test_unknown_sort_key_is_client_fault(self, bad):
        with pytest.raises(InvalidSortField) as exc_info:
            resolve_sort(bad)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid sort field"


class TestPageClamping:

    def test_defaults(self):
        assert clamp_page() == (20, 0)

    def test_limit_is_capped_at_maximum(self):
        assert clamp_page(500, 10) == (100, 10)

    def test_negative_values_are_raised_to_bounds(self):
        assert clamp_page(-5, -3) == (1, 0)


class TestSetClause:

    def test_only_present_fields_in_schema_order(self):
        fragments, values = build_set_clause(
            {"status": "done", "title": "New"}, TASK_MUTABLE_FIELDS
        )
        assert fragments == ["title = ?", "status = ?"]
        assert values == ["New", "done"]

    def test_null_values_are_written(self):
        fragments, values = build_set_clause({"assigned_to": None}, TASK_MUTABLE_FIELDS)
        assert fragments == ["assigned_to = ?"]
        assert values == [None]

    def test_dates_are_stored_as_iso_strings(self):
        _, values = build_set_clause({"due_date": date(2024, 2, 29)}, TASK_MUTABLE_FIELDS)
        assert values == ["2024-02-29"]

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ValidationFault) as exc_info:
            build_set_clause({"title": "x", "id = 1; --": 1}, TASK_MUTABLE_FIELDS)
        assert "id = 1; --" in exc_info.value.message

    def test_store_owned_columns_are_rejected(self):
        with pytest.raises(ValidationFault):
            build_set_clause({"updated_at": "2024-01-01T00:00:00Z"}, TASK_MUTABLE_FIELDS)
        with pytest.raises(ValidationFault):
            build_set_clause({"created_at": "2024-01-01"}, USER_MUTABLE_FIELDS)

    def test_empty_patch_builds_nothing(self):
        assert build_set_clause({}, USER_MUTABLE_FIELDS) == ([], [])


class TestTaskFilterFromQuery:

    def test_comma_separated_values_are_split_and_trimmed(self):
        task_filter = TaskFilter.from_query(
            status="todo, done,", priority="high", assigned_to="1,null, x"
        )
        assert task_filter.status == ["todo", "done"]
        assert task_filter.priority == ["high"]
        assert task_filter.assigned_to == ["1", "null", "x"]

    def test_missing_values_stay_none(self):
        assert split_csv(None) is None
        assert split_csv("") is None
