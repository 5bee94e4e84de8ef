"""
Query Building for the Task Listing and Partial Updates

Turns structured filter, sort and patch requests into parameterized SQL
fragments plus their bound values. Nothing here touches a connection, so the
builders can be exercised without a store.

Features:
- Multi-valued status/priority/assignee filters (assignee supports the
  "null" sentinel for unassigned tasks)
- Pluggable search predicate: FTS5 relevance matching or a LIKE fallback
- Allow-listed sort keys with a deterministic id tie-break
- Allow-listed SET clause construction for partial updates
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import InvalidSortField, ValidationFault


TASK_STATUSES = ("todo", "in-progress", "done")
TASK_PRIORITIES = ("low", "medium", "high")

# Filter-set member meaning "task has no assignee"
UNASSIGNED = "null"

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

DEFAULT_SORT = "created_at"
DEFAULT_ORDER = "desc"

# Client sort key -> trusted SQL expression. Priority sorts by rank rather
# than alphabetically so that "asc" reads low, medium, high.
SORT_COLUMNS: Dict[str, str] = {
    "created_at": "t.created_at",
    "updated_at": "t.updated_at",
    "due_date": "t.due_date",
    "priority": "CASE t.priority WHEN 'low' THEN 1 WHEN 'medium' THEN 2 WHEN 'high' THEN 3 END",
    "id": "t.id",
    "title": "t.title",
}

# Column order here fixes the order of fragments in generated SET clauses.
TASK_MUTABLE_FIELDS = ("title", "description", "status", "priority", "due_date", "assigned_to")
USER_MUTABLE_FIELDS = ("username", "email", "full_name")

AssigneeFilterValue = Union[int, str]


@dataclass
class TaskFilter:
    """
    Listing request for tasks: filters, sort and page window.

    Empty collections mean "no filter on that field", exactly like None.
    """

    status: Optional[Sequence[str]] = None
    priority: Optional[Sequence[str]] = None
    assigned_to: Optional[Sequence[AssigneeFilterValue]] = None
    search: Optional[str] = None
    due_date_from: Optional[Union[date, str]] = None
    due_date_to: Optional[Union[date, str]] = None
    sort: Optional[str] = None
    order: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    @classmethod
    def from_query(
        cls,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assigned_to: Optional[str] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
        due_date_from: Optional[Union[date, str]] = None,
        due_date_to: Optional[Union[date, str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> "TaskFilter":
        """Build a filter from raw query-string values (comma-separated lists)."""
        return cls(
            status=split_csv(status),
            priority=split_csv(priority),
            assigned_to=split_csv(assigned_to),
            search=search,
            sort=sort,
            order=order,
            due_date_from=due_date_from,
            due_date_to=due_date_to,
            limit=limit,
            offset=offset,
        )


def split_csv(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated query value, dropping blank entries."""
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _distinct(values: Iterable[Any]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def parse_assignees(values: Optional[Iterable[Any]]) -> Tuple[List[int], bool]:
    """
    Split assignee filter values into user ids and the unassigned sentinel.

    Entries that are neither a positive integer nor the sentinel are dropped
    silently.

    Returns:
        (distinct user ids in input order, whether the sentinel was present)
    """
    ids: List[int] = []
    include_unassigned = False
    for value in values or ():
        if isinstance(value, str):
            text = value.strip()
            if text == UNASSIGNED:
                include_unassigned = True
                continue
            if not text.isdigit():
                continue
            value = int(text)
        elif isinstance(value, bool) or not isinstance(value, int):
            continue
        if value > 0:
            ids.append(value)
    return _distinct(ids), include_unassigned


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _iso_date(value: Union[date, str]) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationFault(f"Invalid date: {value!r}")


class SearchPredicate:
    """Capability that restricts tasks to those matching free text."""

    name = "search"

    def build(self, text: str) -> Tuple[str, List[Any]]:
        raise NotImplementedError


class FullTextSearch(SearchPredicate):
    """
    Relevance-based matching through the tasks_fts FTS5 index.

    Behaves like a plain-text query: the input is tokenised, every token is
    quoted (so FTS5 operators in user input are inert) and all tokens must
    match. Stemming comes from the index's porter tokenizer.
    """

    name = "fts5"

    def build(self, text: str) -> Tuple[str, List[Any]]:
        tokens = re.findall(r"\w+", text, flags=re.UNICODE)
        if not tokens:
            # Nothing searchable (punctuation only) matches no documents
            return "1 = 0", []
        match_query = " ".join('"{}"'.format(token) for token in tokens)
        return "t.id IN (SELECT rowid FROM tasks_fts WHERE tasks_fts MATCH ?)", [match_query]


class ContainsSearch(SearchPredicate):
    """
    Case-insensitive substring matching on title or description.

    Used for stores without a full-text index. Every whitespace-separated term
    must appear somewhere in the title or description; there is no stemming
    and no relevance ranking.
    """

    name = "contains"

    def build(self, text: str) -> Tuple[str, List[Any]]:
        fragments = []
        values: List[Any] = []
        for term in text.split():
            pattern = "%{}%".format(
                term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            fragments.append(
                "(t.title LIKE ? ESCAPE '\\' OR COALESCE(t.description, '') LIKE ? ESCAPE '\\')"
            )
            values.extend([pattern, pattern])
        return "(" + " AND ".join(fragments) + ")", values


def build_task_predicates(
    task_filter: TaskFilter, search: Optional[SearchPredicate] = None
) -> Tuple[List[str], List[Any]]:
    """
    Translate a TaskFilter into WHERE fragments (to be AND-ed) and bound values.

    Args:
        task_filter: Listing request
        search: Search capability; ContainsSearch when omitted

    Returns:
        (fragments, values) with values ordered to match the placeholders
    """
    fragments: List[str] = []
    values: List[Any] = []

    statuses = _distinct(task_filter.status or ())
    if statuses:
        fragments.append(f"t.status IN ({_placeholders(len(statuses))})")
        values.extend(statuses)

    priorities = _distinct(task_filter.priority or ())
    if priorities:
        fragments.append(f"t.priority IN ({_placeholders(len(priorities))})")
        values.extend(priorities)

    user_ids, include_unassigned = parse_assignees(task_filter.assigned_to)
    if user_ids and include_unassigned:
        fragments.append(
            f"(t.assigned_to IN ({_placeholders(len(user_ids))}) OR t.assigned_to IS NULL)"
        )
        values.extend(user_ids)
    elif user_ids:
        fragments.append(f"t.assigned_to IN ({_placeholders(len(user_ids))})")
        values.extend(user_ids)
    elif include_unassigned:
        fragments.append("t.assigned_to IS NULL")

    text = (task_filter.search or "").strip()
    if text:
        fragment, search_values = (search or ContainsSearch()).build(text)
        fragments.append(fragment)
        values.extend(search_values)

    if task_filter.due_date_from:
        fragments.append("t.due_date >= ?")
        values.append(_iso_date(task_filter.due_date_from))

    if task_filter.due_date_to:
        fragments.append("t.due_date <= ?")
        values.append(_iso_date(task_filter.due_date_to))

    return fragments, values


def resolve_sort(sort: Optional[str] = None, order: Optional[str] = None) -> str:
    """
    Map a client sort key to a trusted ORDER BY clause.

    The id tie-break runs in the same direction as the primary key so that
    rows sharing a sort value keep a stable order across pages.

    Raises:
        InvalidSortField: If the key is outside the allow-list
    """
    key = sort or DEFAULT_SORT
    column = SORT_COLUMNS.get(key)
    if column is None:
        raise InvalidSortField(key)

    direction = "ASC" if (order or DEFAULT_ORDER).lower() == "asc" else "DESC"
    if key == "id":
        return f"ORDER BY t.id {direction}"
    return f"ORDER BY {column} {direction}, t.id {direction}"


def clamp_page(limit: Optional[int] = None, offset: Optional[int] = None) -> Tuple[int, int]:
    """Apply page-size defaults and bounds: limit in 1..100, offset >= 0."""
    if limit is None:
        limit = DEFAULT_PAGE_SIZE
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset or 0))
    return limit, offset


def to_sql_value(value: Any) -> Any:
    """Convert Python values to what the sqlite3 columns store."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def build_set_clause(
    patch: Dict[str, Any], allowed_fields: Sequence[str]
) -> Tuple[List[str], List[Any]]:
    """
    Build SET fragments for a partial update from a fixed field allow-list.

    Only fields present in the patch are written. Keys outside the allow-list
    (including store-owned columns such as updated_at) are rejected.

    Raises:
        ValidationFault: If the patch names unknown fields
    """
    unknown = sorted(set(patch) - set(allowed_fields))
    if unknown:
        raise ValidationFault(f"Unknown or read-only field(s): {', '.join(unknown)}")

    fragments: List[str] = []
    values: List[Any] = []
    for name in allowed_fields:
        if name in patch:
            fragments.append(f"{name} = ?")
            values.append(to_sql_value(patch[name]))
    return fragments, values
