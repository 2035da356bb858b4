"""
Generic list queries: filter, sort, paginate and expand related rows for any
model, driven by the request's query string.

    GET /cotisations?amount[gte]=100&status=Pending&select=amount,month&sort=-year,month&page=2&limit=5

The query string is parsed into `Condition` nodes first and only then turned
into SQL. Operators exist only as the bracketed suffix of a key
(`amount[gte]`), so field names or values that happen to contain `gt`,
`gte`, `in`... are taken literally.

Models describe their public shape with two class attributes:
- HIDDEN_FIELDS: columns never exposed, filtered on, or sorted by
- REFERENCES: output name -> foreign key column (None for a many-to-many
  collection), e.g. {"member": "member_id"}
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import Depends, Request
from sqlalchemy import func, inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import select

from database import get_db
from errors import ValidationError

RESERVED_PARAMS = ("select", "sort", "page", "limit")
OPERATORS = ("gt", "gte", "lt", "lte", "in")
DEFAULT_SORT = "-created_at"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10

_KEY_RE = re.compile(r"^(?P<field>[^\[\]]+)(?:\[(?P<op>[^\[\]]*)\])?$")
_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


@dataclass(frozen=True)
class Condition:
    field: str
    op: str  # eq | gt | gte | lt | lte | in
    value: Any


@dataclass(frozen=True)
class Populate:
    path: str
    fields: Tuple[str, ...] = ()


# ----------------------------------------------------------------------------
# Model introspection
# ----------------------------------------------------------------------------
def _hidden(model) -> Tuple[str, ...]:
    return tuple(getattr(model, "HIDDEN_FIELDS", ()))


def _references(model) -> Dict[str, Optional[str]]:
    return dict(getattr(model, "REFERENCES", {}))


def public_fields(model) -> List[str]:
    """Output names in column order; foreign keys appear under their reference name."""
    hidden = _hidden(model)
    references = _references(model)
    by_column = {col: name for name, col in references.items() if col is not None}
    names = []
    for prop in sa_inspect(model).column_attrs:
        if prop.key == "id" or prop.key in hidden:
            continue
        names.append(by_column.get(prop.key, prop.key))
    names.extend(name for name, col in references.items() if col is None)
    return names


def _column(model, name: str):
    """Resolve a public or raw column name to its mapped attribute, or None."""
    if name in _hidden(model):
        return None
    references = _references(model)
    if name in references:
        col = references[name]
        return None if col is None else getattr(model, col)
    if name in sa_inspect(model).column_attrs.keys():
        return getattr(model, name)
    return None


def _collection(model, name: str):
    references = _references(model)
    if name in references and references[name] is None:
        return getattr(model, name)
    return None


# ----------------------------------------------------------------------------
# Value coercion
# ----------------------------------------------------------------------------
def coerce_value(attr, raw: str) -> Any:
    try:
        python_type = attr.property.columns[0].type.python_type
    except NotImplementedError:
        return raw
    if isinstance(python_type, type) and issubclass(python_type, enum.Enum):
        return python_type(raw)
    if python_type is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(raw)
    if python_type is datetime:
        return datetime.fromisoformat(raw.strip())
    if python_type is date:
        return date.fromisoformat(raw.strip())
    if python_type in (int, float):
        return python_type(raw.strip())
    return raw


def _coerce(model, name: str, attr, raw: str) -> Any:
    try:
        return coerce_value(attr, raw)
    except ValueError:
        raise ValidationError(f"Invalid value '{raw}' for field '{name}'")


# ----------------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------------
def parse_filters(model, params: Iterable[Tuple[str, str]]) -> List[Condition]:
    grouped: Dict[Tuple[str, str], List[str]] = {}
    for key, value in params:
        if key in RESERVED_PARAMS:
            continue
        match = _KEY_RE.match(key)
        if not match:
            raise ValidationError(f"Malformed query parameter '{key}'")
        name = match.group("field").strip()
        op = match.group("op")
        if op is None:
            op = "eq"
        elif op not in OPERATORS:
            raise ValidationError(f"Unsupported operator '{op}' on field '{name}'")
        if op == "in":
            values = [v.strip() for v in value.split(",") if v.strip()]
        else:
            values = [value]
        grouped.setdefault((name, op), []).extend(values)

    conditions = []
    for (name, op), raw_values in grouped.items():
        collection = _collection(model, name)
        if collection is not None:
            if op not in ("eq", "in"):
                raise ValidationError(f"Operator '{op}' is not supported on '{name}'")
            target_pk = collection.property.mapper.class_.id
            values = [_coerce(model, name, target_pk, v) for v in raw_values]
        else:
            attr = _column(model, name)
            if attr is None:
                raise ValidationError(f"Unknown field '{name}'")
            values = [_coerce(model, name, attr, v) for v in raw_values]

        if op == "eq" and len(values) > 1:
            op = "in"
        if op == "in":
            conditions.append(Condition(name, op, tuple(values)))
        elif len(values) != 1:
            raise ValidationError(f"Operator '{op}' on '{name}' takes a single value")
        else:
            conditions.append(Condition(name, op, values[0]))
    return conditions


def parse_select(model, raw: Optional[str]) -> Optional[Tuple[str, ...]]:
    if raw is None:
        return None
    names = tuple(n.strip() for n in raw.split(",") if n.strip())
    allowed = public_fields(model)
    for name in names:
        if name != "id" and name not in allowed:
            raise ValidationError(f"Unknown field '{name}' in select")
    return names or None


def parse_sort(model, raw: Optional[str]) -> List[Tuple[str, bool]]:
    order = []
    for token in (raw or DEFAULT_SORT).split(","):
        token = token.strip()
        if not token:
            continue
        descending = token.startswith("-")
        name = token.lstrip("-+").strip()
        if name != "id" and _column(model, name) is None:
            raise ValidationError(f"Unknown field '{name}' in sort")
        order.append((name, descending))
    return order


def _positive_int(raw: Optional[str], default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


# ----------------------------------------------------------------------------
# SQL construction
# ----------------------------------------------------------------------------
def condition_clause(model, condition: Condition):
    collection = _collection(model, condition.field)
    if collection is not None:
        target_pk = collection.property.mapper.class_.id
        if condition.op == "in":
            return collection.any(target_pk.in_(condition.value))
        return collection.any(target_pk == condition.value)

    attr = _column(model, condition.field)
    op = condition.op
    if op == "eq":
        return attr.is_(None) if condition.value is None else attr == condition.value
    if op == "gt":
        return attr > condition.value
    if op == "gte":
        return attr >= condition.value
    if op == "lt":
        return attr < condition.value
    if op == "lte":
        return attr <= condition.value
    if op == "in":
        return attr.in_(condition.value)
    raise ValidationError(f"Unsupported operator '{op}'")


@dataclass
class ListQuery:
    model: Any
    conditions: List[Condition] = field(default_factory=list)
    fields: Optional[Tuple[str, ...]] = None
    order: List[Tuple[str, bool]] = field(default_factory=list)
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    populate: Tuple[Populate, ...] = ()

    @classmethod
    def from_params(cls, model, params: Sequence[Tuple[str, str]], populate: Sequence[Populate] = ()) -> "ListQuery":
        params = list(params)
        last = {key: value for key, value in params}
        return cls(
            model=model,
            conditions=parse_filters(model, params),
            fields=parse_select(model, last.get("select")),
            order=parse_sort(model, last.get("sort")),
            page=_positive_int(last.get("page"), DEFAULT_PAGE),
            limit=_positive_int(last.get("limit"), DEFAULT_LIMIT),
            populate=tuple(populate),
        )

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def where_clauses(self) -> list:
        return [condition_clause(self.model, c) for c in self.conditions]

    def order_by(self) -> list:
        clauses = []
        for name, descending in self.order:
            attr = self.model.id if name == "id" else _column(self.model, name)
            clauses.append(attr.desc() if descending else attr.asc())
        # Stable pages when sort keys tie
        last_desc = self.order[-1][1] if self.order else True
        clauses.append(self.model.id.desc() if last_desc else self.model.id.asc())
        return clauses

    def pagination(self, total: int) -> Dict[str, Dict[str, int]]:
        pagination = {}
        if self.skip + self.limit < total:
            pagination["next"] = {"page": self.page + 1, "limit": self.limit}
        if self.page > 1:
            pagination["prev"] = {"page": self.page - 1, "limit": self.limit}
        return pagination

    async def execute(self, db: AsyncSession) -> Dict[str, Any]:
        clauses = self.where_clauses()
        total = await db.scalar(select(func.count()).select_from(self.model).where(*clauses))

        stmt = select(self.model).where(*clauses).order_by(*self.order_by()).offset(self.skip).limit(self.limit)
        for item in self.populate:
            stmt = stmt.options(selectinload(getattr(self.model, item.path)))
        result = await db.execute(stmt)
        rows = result.scalars().all()

        data = [serialize(row, self.fields, self.populate) for row in rows]
        return {
            "success": True,
            "count": len(data),
            "pagination": self.pagination(total or 0),
            "data": data,
        }


def advanced_results(model, populate: Sequence[Populate] = ()):
    """FastAPI dependency producing the list envelope for `model`."""

    async def dependency(request: Request, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
        query = ListQuery.from_params(model, request.query_params.multi_items(), populate)
        return await query.execute(db)

    return dependency


# ----------------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------------
def _plain(value: Any) -> Any:
    return value.value if isinstance(value, enum.Enum) else value


def serialize(obj, fields: Optional[Sequence[str]] = None, populate: Sequence[Populate] = ()) -> Dict[str, Any]:
    model = type(obj)
    references = _references(model)
    expanded = {p.path: p for p in populate}
    out = {"id": obj.id}
    for name in public_fields(model):
        if fields is not None and name not in fields:
            continue
        if name not in references:
            out[name] = _plain(getattr(obj, name))
            continue

        col = references[name]
        if name in expanded:
            sub_fields = expanded[name].fields or None
            related = getattr(obj, name)
            if col is None:
                out[name] = [serialize(r, sub_fields) for r in related]
            else:
                out[name] = serialize(related, sub_fields) if related is not None else None
        elif col is None:
            out[name] = [r.id for r in getattr(obj, name)]
        else:
            out[name] = getattr(obj, col)
    return out
