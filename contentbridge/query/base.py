#!/usr/bin/env python3
"""
Backend-agnostic query model and compiler base class.

Provides the canonical filter AST, the query configuration consumed by every
compiler, the compiled output type and the shared compile pipeline that each
target backend (GROQ, Contentful, Qdrant, ...) implements.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import (
    Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union
)

from ..exceptions import QueryError, ValidationError
from . import pagination

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_RESOLVE_DEPTH = 10


class FilterOperator(Enum):
    """Comparison operators understood by every compiler."""
    # Equality
    EQ = "=="
    NE = "!="

    # Ordering
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="

    # Set membership
    IN = "in"
    NIN = "nin"

    # Array containment
    CONTAINS = "contains"
    CONTAINS_ANY = "containsAny"
    CONTAINS_ALL = "containsAll"

    # Text
    MATCH = "match"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"

    # Existence
    DEFINED = "defined"
    UNDEFINED = "undefined"

    # Graph
    REFERENCES = "references"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string is a valid operator."""
        return value in {op.value for op in cls}

    @classmethod
    def from_string(cls, value: str) -> Optional['FilterOperator']:
        """Convert string to operator."""
        for op in cls:
            if op.value == value:
                return op
        return None


class ConditionKind(Enum):
    """Shape of a filter node."""
    LEAF = "leaf"
    AND = "and"
    OR = "or"
    NOT = "not"


class FilterError(QueryError):
    """Base exception for filter-related errors."""
    pass


class InvalidFilterError(FilterError):
    """Raised when a filter node is malformed (zero or several shapes)."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, context={"path": path} if path else None)
        self.path = path


class FilterDepthError(InvalidFilterError):
    """Raised when filter or projection nesting exceeds the configured limit."""
    pass


class DegradedQueryError(FilterError):
    """Raised in strict mode when a compilation produced degrade notices."""

    def __init__(self, target: str, notices: Sequence['DegradeNotice']):
        self.target = target
        self.notices = tuple(notices)
        reasons = ", ".join(sorted({n.reason.value for n in self.notices}))
        super().__init__(
            f"{target} query degraded ({len(self.notices)} notice(s): {reasons})",
            context={"notices": [n.to_dict() for n in self.notices]},
        )


class DegradeReason(Enum):
    """Why part of a query could not be compiled natively."""
    UNSUPPORTED_OPERATOR = "unsupported_operator"
    INVALID_VALUE = "invalid_value"
    INVALID_FIELD = "invalid_field"
    OR_ACROSS_FIELDS = "or_across_fields"
    EMPTY_OR = "empty_or"
    MATCH_NOTHING = "match_nothing"
    COMPLEX_NOT = "complex_not"
    KEY_COLLISION = "key_collision"
    MULTI_TYPE = "multi_type"
    UNSUPPORTED_EXCLUSION = "unsupported_exclusion"
    UNSUPPORTED_ALIAS = "unsupported_alias"
    UNSUPPORTED_COMPUTED = "unsupported_computed"
    NESTED_PROJECTION = "nested_projection"
    INVALID_PROJECTION = "invalid_projection"
    CURSOR_PAGINATION = "cursor_pagination"
    OFFSET_PAGINATION = "offset_pagination"
    MULTI_SORT = "multi_sort"
    RESOLVE_DEPTH_CLAMPED = "resolve_depth_clamped"
    RESOLVE_OUT_OF_BAND = "resolve_out_of_band"
    UNSUPPORTED_LOCALE = "unsupported_locale"
    PARAMETER_COLLISION = "parameter_collision"


@dataclass(frozen=True)
class DegradeNotice:
    """
    Structured record of a construct that was narrowed or dropped.
    """
    reason: DegradeReason
    message: str
    field: Optional[str] = None
    operator: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "field": self.field,
            "operator": self.operator,
        }


@dataclass
class FilterCondition:
    """
    A single node of the filter tree.

    Exactly one shape is populated: a leaf (``field``/``operator``/``value``)
    or one of the ``and_``/``or_``/``not_`` combinators.
    """
    field: Optional[str] = None
    operator: Union[FilterOperator, str, None] = None
    value: Any = None
    and_: Optional[List['FilterCondition']] = None
    or_: Optional[List['FilterCondition']] = None
    not_: Optional['FilterCondition'] = None

    def __post_init__(self):
        if isinstance(self.operator, str):
            # Unknown operators stay as strings and degrade at compile time
            self.operator = FilterOperator.from_string(self.operator) or self.operator

    def kind(self, path: str = "filter") -> ConditionKind:
        """
        Determine the node shape.

        Raises:
            InvalidFilterError: If zero or several shapes are populated
        """
        shapes = []
        if self.field is not None or self.operator is not None:
            shapes.append(ConditionKind.LEAF)
        if self.and_ is not None:
            shapes.append(ConditionKind.AND)
        if self.or_ is not None:
            shapes.append(ConditionKind.OR)
        if self.not_ is not None:
            shapes.append(ConditionKind.NOT)

        if not shapes:
            raise InvalidFilterError("Filter node has no field, and, or, or not", path=path)
        if len(shapes) > 1:
            names = ", ".join(s.value for s in shapes)
            raise InvalidFilterError(f"Filter node mixes several shapes: {names}", path=path)

        kind = shapes[0]
        if kind is ConditionKind.LEAF:
            if self.operator is None:
                raise InvalidFilterError(f"Leaf on '{self.field}' has no operator", path=path)
            if not isinstance(self.operator, (FilterOperator, str)):
                raise InvalidFilterError(
                    f"Operator must be a string, got {type(self.operator).__name__}", path=path
                )
            if self.field is None and self.operator is not FilterOperator.REFERENCES:
                raise InvalidFilterError(f"Operator {self.operator_name} requires a field", path=path)
        elif kind in (ConditionKind.AND, ConditionKind.OR):
            children = self.and_ if kind is ConditionKind.AND else self.or_
            if not isinstance(children, (list, tuple)):
                raise InvalidFilterError(f"'{kind.value}' requires a list", path=path)
        return kind

    def is_always_true(self) -> bool:
        """True for ``and`` nodes with no constraining children (``and: []``)."""
        return self.and_ is not None and all(c.is_always_true() for c in self.and_)

    @property
    def operator_name(self) -> str:
        if isinstance(self.operator, FilterOperator):
            return self.operator.value
        return str(self.operator)

    @property
    def children(self) -> List['FilterCondition']:
        if self.and_ is not None:
            return list(self.and_)
        if self.or_ is not None:
            return list(self.or_)
        if self.not_ is not None:
            return [self.not_]
        return []

    def __repr__(self):
        if self.and_ is not None:
            return f"and({self.and_})"
        if self.or_ is not None:
            return f"or({self.or_})"
        if self.not_ is not None:
            return f"not({self.not_})"
        return f"{self.field} {self.operator_name} {self.value!r}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_depth: int = DEFAULT_MAX_DEPTH) -> 'FilterCondition':
        """
        Build a condition tree from its dictionary form.

        Args:
            data: ``{"field", "operator", "value"}`` or ``{"and": [...]}`` /
                ``{"or": [...]}`` / ``{"not": {...}}``
            max_depth: Maximum nesting depth to prevent DoS attacks

        Raises:
            InvalidFilterError: If the dictionary is malformed or too deeply nested
        """
        return _condition_from_dict(data, 1, max_depth, "filter")


_LEAF_KEYS = frozenset({"field", "operator", "value"})
_NODE_KEYS = _LEAF_KEYS | {"and", "or", "not"}


def _condition_from_dict(data: Any, depth: int, max_depth: int, path: str) -> FilterCondition:
    if depth > max_depth:
        raise FilterDepthError(f"Filter nesting exceeds maximum depth of {max_depth}", path=path)
    if isinstance(data, FilterCondition):
        return data
    if not isinstance(data, dict):
        raise InvalidFilterError(f"Expected a dict, got {type(data).__name__}", path=path)

    unknown = set(data) - _NODE_KEYS
    if unknown:
        raise InvalidFilterError(f"Unknown filter keys: {', '.join(sorted(unknown))}", path=path)

    def _children(key: str) -> Optional[List[FilterCondition]]:
        if key not in data:
            return None
        items = data[key]
        if not isinstance(items, (list, tuple)):
            raise InvalidFilterError(f"'{key}' requires a list", path=path)
        return [
            _condition_from_dict(item, depth + 1, max_depth, f"{path}.{key}[{i}]")
            for i, item in enumerate(items)
        ]

    not_ = None
    if "not" in data:
        not_ = _condition_from_dict(data["not"], depth + 1, max_depth, f"{path}.not")

    condition = FilterCondition(
        field=data.get("field"),
        operator=data.get("operator"),
        value=data.get("value"),
        and_=_children("and"),
        or_=_children("or"),
        not_=not_,
    )
    condition.kind(path)
    return condition


def where(field: Optional[str], operator: Union[FilterOperator, str], value: Any = None) -> FilterCondition:
    """Create a leaf condition."""
    return FilterCondition(field=field, operator=operator, value=value)


def all_of(*conditions: FilterCondition) -> FilterCondition:
    """Create an ``and`` combinator."""
    return FilterCondition(and_=list(conditions))


def any_of(*conditions: FilterCondition) -> FilterCondition:
    """Create an ``or`` combinator."""
    return FilterCondition(or_=list(conditions))


def negate(condition: FilterCondition) -> FilterCondition:
    """Create a ``not`` combinator."""
    return FilterCondition(not_=condition)


def validate_conditions(conditions: Sequence[FilterCondition],
                        max_depth: int = DEFAULT_MAX_DEPTH,
                        path: str = "filter") -> None:
    """
    Validate the shape of every node in a condition list.

    Walks the whole tree, including branches a target may later skip, so that
    structural errors surface before any output is produced.

    Raises:
        InvalidFilterError: On the first malformed node
        FilterDepthError: When nesting exceeds ``max_depth``
    """
    for i, condition in enumerate(conditions):
        _validate_node(condition, 1, max_depth, f"{path}[{i}]")


def _validate_node(node: Any, depth: int, max_depth: int, path: str) -> None:
    if depth > max_depth:
        raise FilterDepthError(f"Filter nesting exceeds maximum depth of {max_depth}", path=path)
    if not isinstance(node, FilterCondition):
        raise InvalidFilterError(f"Expected FilterCondition, got {type(node).__name__}", path=path)

    kind = node.kind(path)
    if kind is ConditionKind.NOT:
        _validate_node(node.not_, depth + 1, max_depth, f"{path}.not")
    elif kind is not ConditionKind.LEAF:
        for i, child in enumerate(node.children):
            _validate_node(child, depth + 1, max_depth, f"{path}.{kind.value}[{i}]")


@dataclass
class OrderBy:
    """Sort configuration for one field."""
    field: str
    direction: str = "asc"

    def __post_init__(self):
        if not self.field or not isinstance(self.field, str):
            raise ValidationError("OrderBy requires a field name")
        direction = str(self.direction).lower()
        if direction not in ("asc", "desc"):
            raise ValidationError(
                f"Invalid sort direction {self.direction!r} for '{self.field}'",
                context={"field": self.field},
            )
        self.direction = direction

    @property
    def descending(self) -> bool:
        return self.direction == "desc"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderBy':
        return cls(field=data.get("field"), direction=data.get("direction", "asc"))


@dataclass
class QueryConfig:
    """
    Complete, backend-agnostic query description.
    Every compiler turns this into its native query format.
    """
    type: Union[str, Sequence[str], None] = None
    filter: List[FilterCondition] = field(default_factory=list)
    projection: Optional[Dict[str, Any]] = None
    order_by: List[OrderBy] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    cursor: Optional[str] = None
    locale: Optional[str] = None
    fallback_locale: Optional[str] = None
    include_drafts: Optional[bool] = None
    resolve_references: Union[bool, int, None] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type is not None and not isinstance(self.type, str):
            types = list(self.type)
            if not types:
                raise ValidationError("QueryConfig.type must not be an empty list")
            self.type = types
        for name in self.types:
            if not isinstance(name, str) or not name:
                raise ValidationError(f"Invalid document type {name!r}")

        # Dict filters stay raw until compile time, where the compiler's max_depth applies
        self.filter = list(self.filter or [])
        self.order_by = [
            OrderBy.from_dict(o) if isinstance(o, dict) else o
            for o in (self.order_by or [])
        ]
        self.params = dict(self.params or {})

        for name in ("limit", "offset"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")

        resolve = self.resolve_references
        if resolve is not None and not isinstance(resolve, bool):
            if not isinstance(resolve, int) or resolve < 0:
                raise ValidationError(
                    f"resolve_references must be a boolean or a non-negative depth, got {resolve!r}"
                )

    @property
    def types(self) -> List[str]:
        """Document types as a list (empty when no type is set)."""
        if self.type is None:
            return []
        if isinstance(self.type, str):
            return [self.type]
        return list(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_depth: int = DEFAULT_MAX_DEPTH) -> 'QueryConfig':
        """
        Build a QueryConfig from its wire form.
        Accepts camelCase (``orderBy``, ``resolveReferences``) and snake_case keys.
        """
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        filters = [
            _condition_from_dict(c, 1, max_depth, f"filter[{i}]")
            for i, c in enumerate(pick("filter", default=[]) or [])
        ]
        return cls(
            type=pick("type"),
            filter=filters,
            projection=pick("projection"),
            order_by=pick("order_by", "orderBy", default=[]),
            limit=pick("limit"),
            offset=pick("offset"),
            cursor=pick("cursor"),
            locale=pick("locale"),
            fallback_locale=pick("fallback_locale", "fallbackLocale"),
            include_drafts=pick("include_drafts", "includeDrafts"),
            resolve_references=pick("resolve_references", "resolveReferences"),
            params=pick("params", default={}),
        )


@dataclass(frozen=True)
class CompiledQuery:
    """
    Output of one ``compile()`` call.

    ``query`` is the native value (a string for expression targets, a
    structured object for parameter-map and tree targets); ``parameters``
    holds placeholder bindings and the separately exposed options.
    """
    target: str
    query: Any
    parameters: Mapping[str, Any]
    notices: Tuple[DegradeNotice, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.notices)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "query": self.query,
            "parameters": dict(self.parameters),
            "notices": [n.to_dict() for n in self.notices],
        }


class CompileContext:
    """
    Mutable state of a single ``compile()`` call.

    Created fresh for every call and threaded through the recursive compile
    functions; compiler instances never hold per-call state.
    """

    def __init__(self, target: str, max_depth: int = DEFAULT_MAX_DEPTH):
        self.target = target
        self.max_depth = max_depth
        self.params: Dict[str, Any] = {}
        self.notices: List[DegradeNotice] = []
        self._counter = 0

    def add_param(self, value: Any) -> str:
        """Register a placeholder value and return its name."""
        name = f"p{self._counter}"
        self._counter += 1
        self.params[name] = value
        return name

    def degrade(self, reason: DegradeReason, message: str,
                field: Optional[str] = None,
                operator: Optional[str] = None) -> DegradeNotice:
        """Record a degrade notice and log it."""
        notice = DegradeNotice(reason=reason, message=message, field=field, operator=operator)
        self.notices.append(notice)
        logger.warning(f"[{self.target}] {reason.value}: {message}")
        return notice


class QueryCompilerBackend(ABC):
    """
    Abstract base class for query compilers.

    Each target implements ``_compile`` to turn a validated QueryConfig into
    its native query value plus the parameter mapping.
    """

    TARGET = "abstract"
    SUPPORTED_OPERATORS: FrozenSet[FilterOperator] = frozenset()
    DEFAULT_LIMIT: Optional[int] = None
    ACCEPTS_RAW_GLOBAL_FILTER = False

    def __init__(self,
                 default_locale: Optional[str] = None,
                 fallback_locales: Optional[Sequence[str]] = None,
                 default_limit: Optional[int] = None,
                 max_resolve_depth: int = DEFAULT_MAX_RESOLVE_DEPTH,
                 global_filter: Any = None,
                 include_drafts: Optional[bool] = None,
                 strict: bool = False,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        """
        Initialize the compiler.

        Args:
            default_locale: Locale used when a query sets none
            fallback_locales: Fallback locales in order of preference
            default_limit: Result count used when a query sets no limit
            max_resolve_depth: Upper bound for reference resolution depth
            global_filter: Conditions applied to every query
            include_drafts: Draft policy; None leaves the backend default
            strict: Raise DegradedQueryError instead of returning degraded queries
            max_depth: Maximum filter/projection nesting depth
        """
        if default_limit is None:
            default_limit = self.DEFAULT_LIMIT
        for name, value in (("default_limit", default_limit),
                            ("max_resolve_depth", max_resolve_depth),
                            ("max_depth", max_depth)):
            if value is None and name == "default_limit":
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
        if max_depth < 1:
            raise ValidationError("max_depth must be at least 1")

        self.default_locale = default_locale
        self.fallback_locales = list(fallback_locales or [])
        self.default_limit = default_limit
        self.max_resolve_depth = max_resolve_depth
        self.include_drafts = include_drafts
        self.strict = strict
        self.max_depth = max_depth
        self.global_filter = self._normalize_global_filter(global_filter)

    def _normalize_global_filter(self, global_filter: Any) -> Union[str, List[FilterCondition]]:
        if global_filter is None:
            return []
        if isinstance(global_filter, str):
            if not self.ACCEPTS_RAW_GLOBAL_FILTER:
                raise ValidationError(
                    f"{self.__class__.__name__} does not accept raw string global filters"
                )
            return global_filter
        if isinstance(global_filter, (FilterCondition, dict)):
            global_filter = [global_filter]
        conditions = [
            FilterCondition.from_dict(c, self.max_depth) if isinstance(c, dict) else c
            for c in global_filter
        ]
        validate_conditions(conditions, self.max_depth, path="global_filter")
        return conditions

    # -- pipeline ------------------------------------------------------------

    def compile(self, query: Union[QueryConfig, Dict[str, Any]]) -> CompiledQuery:
        """
        Compile a QueryConfig to the target's native query.

        Args:
            query: The query configuration (or its dictionary form)

        Returns:
            A fresh CompiledQuery

        Raises:
            InvalidFilterError: If the filter tree is malformed
            DegradedQueryError: In strict mode, if anything degraded
        """
        if isinstance(query, dict):
            query = QueryConfig.from_dict(query, self.max_depth)
        elif any(isinstance(c, dict) for c in query.filter):
            query = replace(query, filter=[
                _condition_from_dict(c, 1, self.max_depth, f"filter[{i}]") if isinstance(c, dict) else c
                for i, c in enumerate(query.filter)
            ])

        # Structural errors are fatal and raised before any output exists
        validate_conditions(query.filter, self.max_depth)

        ctx = CompileContext(self.TARGET, self.max_depth)
        native, parameters = self._compile(query, ctx)

        compiled = CompiledQuery(
            target=self.TARGET,
            query=native,
            parameters=MappingProxyType(dict(parameters)),
            notices=tuple(ctx.notices),
        )

        if self.strict and compiled.notices:
            raise DegradedQueryError(self.TARGET, compiled.notices)

        logger.debug(f"Compiled {self.TARGET} query: {native!r}")
        return compiled

    @abstractmethod
    def _compile(self, query: QueryConfig, ctx: CompileContext) -> Tuple[Any, Dict[str, Any]]:
        """
        Compile a validated query.

        Returns:
            Tuple of (native query, parameters)
        """
        pass

    def supports_operator(self, operator: Union[FilterOperator, str]) -> bool:
        """Check if this compiler supports a specific operator."""
        return isinstance(operator, FilterOperator) and operator in self.SUPPORTED_OPERATORS

    # -- shared steps --------------------------------------------------------

    def _drafts_included(self, query: QueryConfig) -> Optional[bool]:
        if query.include_drafts is not None:
            return query.include_drafts
        return self.include_drafts

    def _resolve_depth(self, query: QueryConfig, ctx: CompileContext) -> int:
        depth, clamped = pagination.resolve_depth(query.resolve_references, self.max_resolve_depth)
        if clamped:
            ctx.degrade(
                DegradeReason.RESOLVE_DEPTH_CLAMPED,
                f"Reference depth {query.resolve_references} clamped to {self.max_resolve_depth}",
            )
        return depth

    def _page(self, query: QueryConfig) -> pagination.Page:
        return pagination.resolve_page(query.limit, query.offset, self.default_limit)

    def _unsupported_operator(self, ctx: CompileContext, condition: FilterCondition) -> None:
        ctx.degrade(
            DegradeReason.UNSUPPORTED_OPERATOR,
            f"Operator '{condition.operator_name}' is not supported by {self.TARGET}; condition dropped",
            field=condition.field,
            operator=condition.operator_name,
        )

    def _invalid_value(self, ctx: CompileContext, condition: FilterCondition, reason: str) -> None:
        ctx.degrade(
            DegradeReason.INVALID_VALUE,
            f"Value for '{condition.field}' cannot be compiled: {reason}; condition dropped",
            field=condition.field,
            operator=condition.operator_name,
        )

    # -- convenience builders ------------------------------------------------

    def build_get_by_id_query(self, document_id: str, *,
                              type: Union[str, Sequence[str], None] = None,
                              projection: Optional[Dict[str, Any]] = None,
                              locale: Optional[str] = None,
                              resolve_references: Union[bool, int, None] = None) -> CompiledQuery:
        """Build a query for a single document by its ID."""
        return self.compile(QueryConfig(
            type=type,
            filter=[where("_id", FilterOperator.EQ, document_id)],
            projection=projection,
            limit=1,
            locale=locale,
            resolve_references=resolve_references,
        ))

    def build_get_by_type_query(self, type: Union[str, Sequence[str]], *,
                                filter: Optional[List[FilterCondition]] = None,
                                projection: Optional[Dict[str, Any]] = None,
                                order_by: Optional[List[OrderBy]] = None,
                                limit: Optional[int] = None,
                                offset: Optional[int] = None,
                                locale: Optional[str] = None) -> CompiledQuery:
        """Build a query for documents of a type."""
        return self.compile(QueryConfig(
            type=type,
            filter=list(filter or []),
            projection=projection,
            order_by=list(order_by or []),
            limit=limit,
            offset=offset,
            locale=locale,
        ))

    def build_referenced_by_query(self, document_id: str, *,
                                  field: Optional[str] = None,
                                  type: Union[str, Sequence[str], None] = None,
                                  projection: Optional[Dict[str, Any]] = None,
                                  limit: Optional[int] = None,
                                  locale: Optional[str] = None) -> CompiledQuery:
        """
        Build a query for documents that reference ``document_id``.

        Args:
            document_id: The referenced document
            field: Restrict the match to one reference field
        """
        return self.compile(QueryConfig(
            type=type,
            filter=[where(field, FilterOperator.REFERENCES, document_id)],
            projection=projection,
            limit=limit,
            locale=locale,
        ))
