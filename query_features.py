"""
List-query shaping shared by every collection endpoint.

Query string grammar::

    GET /products?category=Seeds&price[gte]=100&price[lt]=500
                 &select=name,price&sort=-price,name&page=2&limit=10

Every parameter other than ``select``, ``sort``, ``page``, ``limit`` and
``search`` is a filter on a declared field. ``field=value`` compares by
equality; ``field[op]=value`` maps to the Mongo comparison operator ``$op``.
``in``/``nin`` take comma-separated values. Values are cast to the declared
type of the field so that ``stock[lte]=10`` compares numbers, not strings.

Malformed input fails closed: an unknown field, an unknown operator, a value
that does not cast or a bad page/limit raises ``ValidationError``.
"""
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING

import config
from errors import ValidationError

RESERVED = ("select", "sort", "page", "limit", "search")
OPERATORS = ("gt", "gte", "lt", "lte", "in", "nin", "ne")
LIST_OPERATORS = ("in", "nin")

_TOKEN = re.compile(r"^(?P<field>[A-Za-z_][\w.]*)(?:\[(?P<op>[^\]]*)\])?$")

Params = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(value)


def parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.strip())


CASTS: Dict[Any, Callable[[str], Any]] = {
    str: str,
    int: int,
    float: float,
    bool: parse_bool,
    ObjectId: ObjectId,
    datetime: parse_datetime,
}

BASE_FIELDS = {"_id": ObjectId, "created_at": datetime, "updated_at": datetime}


@dataclass
class Page:
    results: List[dict]
    total: int
    page: int
    limit: int
    pagination: Dict[str, Dict[str, int]]

    @property
    def count(self) -> int:
        return len(self.results)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class QueryFeatures:
    """Translate raw query parameters into a Mongo find + count.

    ``fields`` maps each filterable/selectable field to its python type.
    ``hidden`` fields are never returned, whatever ``select`` asks for.
    """

    def __init__(
        self,
        params: Params,
        fields: Mapping[str, Any],
        hidden: Sequence[str] = (),
        search_fields: Sequence[str] = (),
        default_sort: str = "-created_at",
    ):
        items = params.items() if isinstance(params, Mapping) else params
        self.params: List[Tuple[str, str]] = [(str(k), str(v)) for k, v in items]
        self.fields = {**BASE_FIELDS, **fields}
        self.hidden = tuple(hidden)
        self.search_fields = tuple(search_fields)
        self.default_sort = default_sort

    def _get(self, name: str) -> Optional[str]:
        value = None
        for key, val in self.params:
            if key == name:
                value = val
        return value

    def _cast(self, field: str, raw: str) -> Any:
        cast = CASTS.get(self.fields[field], self.fields[field])
        try:
            return cast(raw)
        except (ValueError, TypeError, InvalidId):
            raise ValidationError(f"Invalid value for {field}: {raw}")

    def _known(self, field: str, purpose: str) -> str:
        if field not in self.fields or field in self.hidden:
            raise ValidationError(f"Cannot {purpose} on unknown field: {field}")
        return field

    def filter(self) -> dict:
        query: Dict[str, Any] = {}
        for key, raw in self.params:
            if key in RESERVED:
                continue
            match = _TOKEN.match(key)
            if not match:
                raise ValidationError(f"Invalid query parameter: {key}")
            field = self._known(match.group("field"), "filter")
            op = match.group("op")

            if op is None:
                condition = {"$eq": self._cast(field, raw)}
            elif op in OPERATORS:
                if op in LIST_OPERATORS:
                    value = [self._cast(field, part) for part in raw.split(",") if part != ""]
                else:
                    value = self._cast(field, raw)
                condition = {f"${op}": value}
            else:
                raise ValidationError(f"Unsupported filter operator: {op}")

            existing = query.setdefault(field, {})
            existing.update(condition)

        # Collapse plain equality back to the literal form
        return {
            field: cond["$eq"] if list(cond) == ["$eq"] else cond
            for field, cond in query.items()
        }

    def search(self) -> Optional[dict]:
        term = self._get("search")
        if not term or not self.search_fields:
            return None
        pattern = re.escape(term)
        return {"$or": [{field: {"$regex": pattern, "$options": "i"}} for field in self.search_fields]}

    def projection(self) -> Optional[dict]:
        select = self._get("select")
        if select:
            fields = [self._known(f.strip(), "select") for f in select.split(",") if f.strip()]
            proj = {f: 1 for f in fields}
            proj["_id"] = 1
            return proj
        if self.hidden:
            return {f: 0 for f in self.hidden}
        return None

    def sort(self) -> List[Tuple[str, int]]:
        order = self._get("sort") or self.default_sort
        keys: List[Tuple[str, int]] = []
        for token in order.split(","):
            token = token.strip()
            if not token:
                continue
            direction = DESCENDING if token.startswith("-") else ASCENDING
            field = self._known(token.lstrip("-+"), "sort")
            keys.append((field, direction))
        if not any(field == "_id" for field, _ in keys):
            # tie-breaker so equal sort keys page deterministically
            keys.append(("_id", keys[-1][1] if keys else DESCENDING))
        return keys

    def _positive_int(self, name: str, default: int) -> int:
        raw = self._get(name)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
        if value < 1:
            raise ValidationError(f"{name} must be at least 1")
        return value

    def page_window(self) -> Tuple[int, int, int]:
        """Return ``(page, limit, skip)``."""
        page = self._positive_int("page", 1)
        limit = min(self._positive_int("limit", config.DEFAULT_PAGE_LIMIT), config.MAX_PAGE_LIMIT)
        return page, limit, (page - 1) * limit

    def build_query(self, base_filter: Optional[dict] = None) -> dict:
        clauses = [c for c in (base_filter, self.filter(), self.search()) if c]
        if not clauses:
            return {}
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def execute(self, coll, base_filter: Optional[dict] = None) -> Page:
        query = self.build_query(base_filter)
        page, limit, skip = self.page_window()
        sort = self.sort()
        projection = self.projection()

        total = coll.count_documents(query)
        results = list(coll.find(query, projection).sort(sort).skip(skip).limit(limit))

        end_index = page * limit
        pagination: Dict[str, Dict[str, int]] = {}
        if end_index < total:
            pagination["next"] = {"page": page + 1, "limit": limit}
        if skip > 0:
            pagination["prev"] = {"page": page - 1, "limit": limit}

        return Page(results=results, total=total, page=page, limit=limit, pagination=pagination)
