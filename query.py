"""
Query-string features shared by the list endpoints.

    ?difficulty=easy&price[lt]=1000&sort=price,-ratings_average&fields=name,price&page=2&limit=10
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

RESERVED = {"page", "sort", "limit", "fields"}
OPERATORS = {"gte", "gt", "lte", "lt", "ne"}
DEFAULT_LIMIT = 100
_KEY = re.compile(r"^(?P<field>[\w.]+)(\[(?P<op>\w+)\])?$")


@dataclass
class ListQuery:
    filter: Dict[str, Any] = field(default_factory=dict)
    sort: List[Tuple[str, int]] = field(default_factory=list)
    projection: Optional[Dict[str, int]] = None
    skip: int = 0
    limit: int = DEFAULT_LIMIT


def _coerce(value: str) -> Any:
    if value in ("true", "false"):
        return value == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def parse_sort(value: Optional[str], default: str = "-created_at") -> List[Tuple[str, int]]:
    spec = []
    for part in (value or default).split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            spec.append((part[1:], DESCENDING))
        else:
            spec.append((part, ASCENDING))
    return spec


def parse_query(items: Iterable[Tuple[str, str]], default_sort: str = "-created_at") -> ListQuery:
    """Build a ListQuery from (key, value) query-string pairs."""
    params: Dict[str, str] = {}
    mongo_filter: Dict[str, Any] = {}
    for key, value in items:
        if key in RESERVED:
            params[key] = value
            continue
        match = _KEY.match(key)
        # unknown shapes and "$" keys are dropped so nobody can inject operators
        if not match:
            continue
        name, op = match.group("field"), match.group("op")
        if op is None:
            mongo_filter[name] = _coerce(value)
        elif op in OPERATORS:
            condition = mongo_filter.get(name)
            if not isinstance(condition, dict):
                condition = {}
            condition[f"${op}"] = _coerce(value)
            mongo_filter[name] = condition

    projection = None
    if params.get("fields"):
        projection = {f.strip(): 1 for f in params["fields"].split(",") if f.strip() and not f.strip().startswith("$")}

    try:
        page = max(int(params.get("page", 1)), 1)
        limit = max(int(params.get("limit", DEFAULT_LIMIT)), 1)
    except ValueError:
        page, limit = 1, DEFAULT_LIMIT

    return ListQuery(
        filter=mongo_filter,
        sort=parse_sort(params.get("sort"), default_sort),
        projection=projection or None,
        skip=(page - 1) * limit,
        limit=limit,
    )
