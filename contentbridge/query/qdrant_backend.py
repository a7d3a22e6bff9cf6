#!/usr/bin/env python3
"""
Qdrant backend.
Compiles QueryConfig to a Qdrant payload Filter plus ``scroll()`` options.

Documents are points whose payload holds the document fields. ``_id`` is the
point ID (HasIdCondition); ``_type``, ``_createdAt`` and ``_updatedAt`` live
at the payload root, other fields optionally under ``payload_prefix``.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from qdrant_client.models import (
    DatetimeRange, Direction, FieldCondition, Filter, HasIdCondition,
    IsEmptyCondition, IsNullCondition, MatchAny, MatchExcept, MatchText,
    MatchValue, OrderBy, PayloadField, PayloadSelectorExclude,
    PayloadSelectorInclude, Range
)

from .base import (
    CompileContext, CompiledQuery, ConditionKind, DegradeReason,
    FilterCondition, FilterOperator, QueryCompilerBackend, QueryConfig
)
from .formatter import (
    LiteralFormatError, to_match_value, to_match_values, to_point_id,
    to_range_value
)
from .projection import ProjectionKind, expansion_depth, normalize_projection

logger = logging.getLogger(__name__)

_FIELD_RE = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(?:\[\])?(?:\.[A-Za-z_][A-Za-z0-9_]*(?:\[\])?)*$"
)

_RANGE_KEYS = {
    FilterOperator.GT: "gt",
    FilterOperator.GTE: "gte",
    FilterOperator.LT: "lt",
    FilterOperator.LTE: "lte",
}

Condition = Union[FieldCondition, IsEmptyCondition, IsNullCondition, HasIdCondition, Filter]

# Returned for nodes that constrain nothing (``and: []``); never part of a Filter
MATCH_ALL = object()


class QdrantQueryCompiler(QueryCompilerBackend):
    """
    Converts QueryConfig to Qdrant Filter objects.

    ``CompiledQuery.query`` is a ``Filter`` (or None for an unfiltered
    scroll); ``CompiledQuery.parameters`` holds limit/offset/with_payload/
    order_by and, when references should be resolved, ``resolve_depth``.
    """

    TARGET = "qdrant"
    DEFAULT_LIMIT = 10

    # Operators supported by Qdrant
    SUPPORTED_OPERATORS = frozenset({
        FilterOperator.EQ, FilterOperator.NE,
        FilterOperator.GT, FilterOperator.GTE,
        FilterOperator.LT, FilterOperator.LTE,
        FilterOperator.IN, FilterOperator.NIN,
        FilterOperator.CONTAINS, FilterOperator.CONTAINS_ANY,
        FilterOperator.CONTAINS_ALL, FilterOperator.MATCH,
        FilterOperator.DEFINED, FilterOperator.UNDEFINED,
    })

    ID_OPERATORS = {FilterOperator.EQ, FilterOperator.NE, FilterOperator.IN, FilterOperator.NIN}

    # Fields that are at payload root (not under payload_prefix)
    ROOT_FIELDS = {"_type", "_createdAt", "_updatedAt"}

    def __init__(self, payload_prefix: Optional[str] = None,
                 draft_field: str = "_draft", **kwargs):
        """
        Initialize Qdrant backend.

        Args:
            payload_prefix: Prefix for document fields inside the payload
            draft_field: Root payload flag marking draft documents
            **kwargs: Common compiler options (see QueryCompilerBackend)
        """
        super().__init__(**kwargs)
        self.payload_prefix = payload_prefix
        self.draft_field = draft_field

    def _compile(self, query: QueryConfig, ctx: CompileContext) -> Tuple[Optional[Filter], Dict[str, Any]]:
        scroll_filter = self._compile_filter(query, ctx)

        parameters: Dict[str, Any] = {}
        with_payload, expand_depth = self._compile_projection(query, ctx)
        parameters["with_payload"] = with_payload

        order_by = self._compile_order(query, ctx)
        if order_by is not None:
            parameters["order_by"] = order_by

        parameters.update(self._compile_pagination(query, order_by is not None, ctx))

        depth = self._compile_resolve_depth(query, expand_depth, ctx)
        if depth:
            parameters["resolve_depth"] = depth

        if query.locale or query.fallback_locale:
            ctx.degrade(
                DegradeReason.UNSUPPORTED_LOCALE,
                "Qdrant payloads are not localized; locale ignored",
            )

        for key, value in query.params.items():
            if key in parameters:
                ctx.degrade(
                    DegradeReason.PARAMETER_COLLISION,
                    f"Passthrough parameter '{key}' collides with a compiled parameter; ignored",
                )
                continue
            parameters[key] = value

        return scroll_filter, parameters

    # -- filter --------------------------------------------------------------

    def _compile_filter(self, query: QueryConfig, ctx: CompileContext) -> Optional[Filter]:
        must: List[Condition] = []
        must_not: List[Condition] = []

        types = query.types
        if len(types) == 1:
            must.append(FieldCondition(key="_type", match=MatchValue(value=types[0])))
        elif types:
            must.append(FieldCondition(key="_type", match=MatchAny(any=types)))

        if self._drafts_included(query) is False:
            must_not.append(
                FieldCondition(key=self.draft_field, match=MatchValue(value=True))
            )

        for condition in list(query.filter) + list(self.global_filter):
            converted = self._convert_expression(condition, ctx)
            if converted is None or converted is MATCH_ALL:
                continue
            if isinstance(converted, Filter) and self._only_must(converted):
                # Merge conditions
                must.extend(converted.must)
            else:
                must.append(converted)

        # Empty filter matches everything
        if not must and not must_not:
            return None
        return Filter(must=must or None, must_not=must_not or None)

    @staticmethod
    def _only_must(flt: Filter) -> bool:
        return bool(flt.must) and not flt.should and not flt.must_not

    def _convert_expression(self, condition: FilterCondition, ctx: CompileContext) -> Optional[Condition]:
        """Convert a node; None when it was dropped, MATCH_ALL when it constrains nothing."""
        kind = condition.kind()
        if kind is ConditionKind.LEAF:
            return self._convert_condition(condition, ctx)
        if kind is ConditionKind.NOT:
            inner = self._convert_expression(condition.not_, ctx)
            if inner is None:
                return None
            if inner is MATCH_ALL:
                ctx.degrade(
                    DegradeReason.MATCH_NOTHING,
                    "Negating an always-true condition matches nothing, "
                    "which a Qdrant filter cannot express; dropped",
                    operator="not",
                )
                return None
            return Filter(must_not=[inner])
        return self._convert_compound(kind, condition.children, ctx)

    def _convert_compound(self, kind: ConditionKind, children: List[FilterCondition],
                          ctx: CompileContext) -> Optional[Condition]:
        """Convert compound expression (AND/OR)."""
        if kind is ConditionKind.OR and not children:
            ctx.degrade(
                DegradeReason.EMPTY_OR,
                "An empty OR matches nothing, which a Qdrant filter cannot express; dropped",
                operator="or",
            )
            return None

        results = [self._convert_expression(child, ctx) for child in children]
        if kind is ConditionKind.OR and any(r is MATCH_ALL for r in results):
            return MATCH_ALL

        converted = [r for r in results if r is not None and r is not MATCH_ALL]
        if not converted:
            # Vacuously true, unless every child was dropped
            return MATCH_ALL if not results or any(r is MATCH_ALL for r in results) else None
        if len(converted) == 1:
            return converted[0]
        if kind is ConditionKind.AND:
            return Filter(must=converted)
        # At least one condition must match
        return Filter(should=converted)

    def _convert_condition(self, condition: FilterCondition, ctx: CompileContext) -> Optional[Condition]:
        """Convert a single condition to Qdrant format."""
        op = condition.operator
        if not self.supports_operator(op):
            self._unsupported_operator(ctx, condition)
            return None

        field = condition.field
        if field is None or not _FIELD_RE.match(field):
            ctx.degrade(
                DegradeReason.INVALID_FIELD,
                f"'{field}' is not a valid payload key; condition dropped",
                field=field,
                operator=condition.operator_name,
            )
            return None

        try:
            if field == "_id":
                return self._build_id_condition(condition, ctx)
            return self._build_field_condition(condition, self._field_key(field))
        except LiteralFormatError as e:
            self._invalid_value(ctx, condition, str(e))
            return None

    def _build_id_condition(self, condition: FilterCondition, ctx: CompileContext) -> Optional[Condition]:
        op = condition.operator
        if op not in self.ID_OPERATORS:
            ctx.degrade(
                DegradeReason.UNSUPPORTED_OPERATOR,
                f"Point IDs only support equality and membership, not '{condition.operator_name}'",
                field="_id",
                operator=condition.operator_name,
            )
            return None

        value = condition.value
        if op in (FilterOperator.IN, FilterOperator.NIN):
            values = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
            ids = [to_point_id(v) for v in values]
        else:
            ids = [to_point_id(value)]

        base = HasIdCondition(has_id=ids)
        if op in (FilterOperator.NE, FilterOperator.NIN):
            return Filter(must_not=[base])
        return base

    def _build_field_condition(self, condition: FilterCondition, key: str) -> Optional[Condition]:
        op = condition.operator
        value = condition.value

        if op is FilterOperator.EQ or op is FilterOperator.NE:
            if value is None:
                base = IsNullCondition(is_null=PayloadField(key=key))
            else:
                base = FieldCondition(key=key, match=MatchValue(value=to_match_value(value)))
            # Flip negation for NE
            return Filter(must_not=[base]) if op is FilterOperator.NE else base

        if op in _RANGE_KEYS:
            kind, bound = to_range_value(value)
            range_cls = Range if kind == "number" else DatetimeRange
            return FieldCondition(key=key, range=range_cls(**{_RANGE_KEYS[op]: bound}))

        if op is FilterOperator.IN or op is FilterOperator.CONTAINS_ANY:
            return FieldCondition(key=key, match=MatchAny(any=to_match_values(value)))

        if op is FilterOperator.NIN:
            return FieldCondition(key=key, match=MatchExcept(**{"except": to_match_values(value)}))

        if op is FilterOperator.CONTAINS:
            # An array payload matches when any element matches
            return FieldCondition(key=key, match=MatchValue(value=to_match_value(value)))

        if op is FilterOperator.CONTAINS_ALL:
            values = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
            conditions = [
                FieldCondition(key=key, match=MatchValue(value=to_match_value(v)))
                for v in values
            ]
            if not conditions:
                return MATCH_ALL
            # In Qdrant, we need multiple conditions ANDed together
            return conditions[0] if len(conditions) == 1 else Filter(must=conditions)

        if op is FilterOperator.MATCH:
            if not isinstance(value, str) or not value:
                raise LiteralFormatError("text match requires a non-empty string")
            return FieldCondition(key=key, match=MatchText(text=value))

        if op is FilterOperator.DEFINED:
            return Filter(must_not=[IsEmptyCondition(is_empty=PayloadField(key=key))])

        # UNDEFINED
        return IsEmptyCondition(is_empty=PayloadField(key=key))

    def _field_key(self, field: str) -> str:
        """
        Get the payload key for a field name.
        Adds payload prefix for non-root fields.
        """
        root = field.split(".", 1)[0].replace("[]", "")
        if not self.payload_prefix or root in self.ROOT_FIELDS:
            return field
        return f"{self.payload_prefix}.{field}"

    # -- projection ----------------------------------------------------------

    def _compile_projection(self, query: QueryConfig, ctx: CompileContext) -> Tuple[Any, int]:
        """
        Compile projection to ``with_payload``.

        Returns:
            Tuple of (True or a payload selector, expansion depth requested)
        """
        if query.projection is None:
            return True, 0

        fields = normalize_projection(query.projection, ctx)
        includes: List[str] = []
        excludes: List[str] = []
        self._collect_keys(fields, "", includes, excludes, ctx)

        if includes:
            if excludes:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_EXCLUSION,
                    f"Cannot mix included and excluded payload keys; ignoring exclusions: "
                    f"{', '.join(excludes)}",
                )
            keys = sorted(self.ROOT_FIELDS)
            keys.extend(k for k in includes if k not in keys)
            return PayloadSelectorInclude(include=keys), expansion_depth(fields)

        if excludes:
            return PayloadSelectorExclude(exclude=excludes), expansion_depth(fields)
        return True, expansion_depth(fields)

    def _collect_keys(self, fields: List[Any], prefix: str, includes: List[str],
                      excludes: List[str], ctx: CompileContext) -> None:
        for item in fields:
            path = f"{prefix}{item.name}"
            if item.kind is ProjectionKind.ALIAS:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_ALIAS,
                    f"Qdrant cannot alias payload keys; '{path}' dropped",
                    field=path,
                )
                continue
            if item.kind is ProjectionKind.COMPUTED:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_COMPUTED,
                    f"Qdrant cannot compute payload keys; '{path}' dropped",
                    field=path,
                )
                continue
            if not _FIELD_RE.match(path):
                ctx.degrade(
                    DegradeReason.INVALID_FIELD,
                    f"'{path}' is not a valid payload key; dropped",
                    field=path,
                )
                continue

            if item.kind is ProjectionKind.NESTED:
                self._collect_keys(list(item.fields), f"{path}.", includes, excludes, ctx)
            elif item.kind is ProjectionKind.EXCLUDE:
                excludes.append(self._field_key(path))
            else:
                # Expansions select the raw reference field
                includes.append(self._field_key(path))

    def _compile_resolve_depth(self, query: QueryConfig, expand_depth: int,
                               ctx: CompileContext) -> int:
        depth = self._resolve_depth(query, ctx)
        if expand_depth > depth:
            if expand_depth > self.max_resolve_depth:
                ctx.degrade(
                    DegradeReason.RESOLVE_DEPTH_CLAMPED,
                    f"Expansion depth {expand_depth} clamped to {self.max_resolve_depth}",
                )
            depth = min(expand_depth, self.max_resolve_depth)
        return depth

    # -- ordering, pagination ------------------------------------------------

    def _compile_order(self, query: QueryConfig, ctx: CompileContext) -> Optional[OrderBy]:
        order_by = None
        for order in query.order_by:
            if order.field == "_id" or not _FIELD_RE.match(order.field):
                ctx.degrade(
                    DegradeReason.INVALID_FIELD,
                    f"Cannot order by '{order.field}'; ignored",
                    field=order.field,
                )
                continue
            if order_by is not None:
                ctx.degrade(
                    DegradeReason.MULTI_SORT,
                    f"Qdrant orders by a single key; '{order.field}' ignored",
                    field=order.field,
                )
                continue
            order_by = OrderBy(
                key=self._field_key(order.field),
                direction=Direction.DESC if order.descending else Direction.ASC,
            )
        return order_by

    def _compile_pagination(self, query: QueryConfig, ordered: bool,
                            ctx: CompileContext) -> Dict[str, Any]:
        if query.offset:
            ctx.degrade(
                DegradeReason.OFFSET_PAGINATION,
                "Qdrant scroll pages by point ID; numeric offset ignored, use cursor",
            )

        page = self._page(query)
        limit = page.limit if page.limit is not None else self.default_limit
        pagination: Dict[str, Any] = {}
        if limit is not None:
            pagination["limit"] = limit

        if query.cursor:
            if ordered:
                ctx.degrade(
                    DegradeReason.CURSOR_PAGINATION,
                    "Qdrant cannot continue from a cursor while ordering; cursor ignored",
                )
            else:
                pagination["offset"] = query.cursor
        return pagination

    # -- output helpers ------------------------------------------------------

    @staticmethod
    def scroll_kwargs(compiled: CompiledQuery, collection_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Keyword arguments for ``QdrantClient.scroll``.

        ``resolve_depth`` is left out; reference resolution happens after
        the scroll.
        """
        kwargs: Dict[str, Any] = {}
        if collection_name is not None:
            kwargs["collection_name"] = collection_name
        kwargs["scroll_filter"] = compiled.query
        for key, value in compiled.parameters.items():
            if key != "resolve_depth":
                kwargs[key] = value
        return kwargs
