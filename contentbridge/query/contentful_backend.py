#!/usr/bin/env python3
"""
Contentful backend.
Compiles QueryConfig to Content Delivery API query parameters
(``fields.<name>[<operator>]=<value>``).

A flat parameter map can only AND its keys together, so some constructs
degrade:

- ``or`` across different fields compiles the first branch only
- ``not`` only compiles around a simple ``==`` leaf
- nested ``and`` groups merge into the same map; a repeated key keeps the
  last value (reported as ``key_collision``)
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from .base import (
    CompileContext, CompiledQuery, ConditionKind, DegradeReason,
    FilterCondition, FilterOperator, QueryCompilerBackend, QueryConfig
)
from .formatter import LiteralFormatError, to_param_value
from .projection import ProjectionKind, expansion_depth, normalize_projection

logger = logging.getLogger(__name__)

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*$")


class ContentfulQueryCompiler(QueryCompilerBackend):
    """
    Converts QueryConfig to Contentful query parameters.

    ``CompiledQuery.query`` holds the filter map (``content_type`` plus field
    filters); ``CompiledQuery.parameters`` holds select/order/skip/limit/
    locale/include. ``to_params`` merges both for the HTTP client.
    """

    TARGET = "contentful"
    DEFAULT_LIMIT = 100

    OPERATOR_SUFFIXES = {
        FilterOperator.EQ: "",
        FilterOperator.NE: "[ne]",
        FilterOperator.GT: "[gt]",
        FilterOperator.GTE: "[gte]",
        FilterOperator.LT: "[lt]",
        FilterOperator.LTE: "[lte]",
        FilterOperator.IN: "[in]",
        FilterOperator.NIN: "[nin]",
        FilterOperator.CONTAINS: "[all]",
        FilterOperator.CONTAINS_ANY: "[in]",
        FilterOperator.CONTAINS_ALL: "[all]",
        FilterOperator.MATCH: "[match]",
        FilterOperator.DEFINED: "[exists]",
        FilterOperator.UNDEFINED: "[exists]",
    }

    SUPPORTED_OPERATORS = frozenset(OPERATOR_SUFFIXES) | {FilterOperator.REFERENCES}

    SYSTEM_FIELDS = {
        "_id": "sys.id",
        "_type": "sys.contentType.sys.id",
        "_createdAt": "sys.createdAt",
        "_updatedAt": "sys.updatedAt",
    }

    def __init__(self, include_all_locales: bool = False, **kwargs):
        """
        Initialize Contentful backend.

        Args:
            include_all_locales: Request every locale (``locale=*``) when a
                query names none
            **kwargs: Common compiler options (see QueryCompilerBackend)
        """
        super().__init__(**kwargs)
        self.include_all_locales = include_all_locales

    def _compile(self, query: QueryConfig, ctx: CompileContext) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        filters = self._compile_filters(query, ctx)

        parameters: Dict[str, Any] = {}
        select, expand_depth = self._compile_projection(query, ctx)
        if select:
            parameters["select"] = select

        order = self._compile_order(query, ctx)
        if order:
            parameters["order"] = order

        parameters.update(self._compile_pagination(query, ctx))

        locale = self._compile_locale(query, ctx)
        if locale:
            parameters["locale"] = locale

        include = self._compile_include(query, expand_depth, ctx)
        if include is not None:
            parameters["include"] = include

        for key, value in query.params.items():
            if key in filters or key in parameters:
                ctx.degrade(
                    DegradeReason.PARAMETER_COLLISION,
                    f"Passthrough parameter '{key}' collides with a compiled parameter; ignored",
                )
                continue
            parameters[key] = value

        return filters, parameters

    # -- filters -------------------------------------------------------------

    def _compile_filters(self, query: QueryConfig, ctx: CompileContext) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}

        types = query.types
        if types:
            filters["content_type"] = types[0]
            if len(types) > 1:
                ctx.degrade(
                    DegradeReason.MULTI_TYPE,
                    f"Contentful queries one content type at a time; using '{types[0]}'",
                )

        for condition in list(query.filter) + list(self.global_filter):
            self._merge(filters, self._convert_expression(condition, ctx), ctx)

        return filters

    def _merge(self, target: Dict[str, Any], source: Dict[str, Any], ctx: CompileContext) -> None:
        """Merge filter keys; the last value wins on collision."""
        for key, value in source.items():
            if key in target and target[key] != value:
                ctx.degrade(
                    DegradeReason.KEY_COLLISION,
                    f"Filter key '{key}' is set more than once; keeping the last value",
                    field=key,
                )
            target[key] = value

    def _convert_expression(self, condition: FilterCondition, ctx: CompileContext) -> Dict[str, Any]:
        kind = condition.kind()
        if kind is ConditionKind.LEAF:
            return self._convert_condition(condition, ctx)
        if kind is ConditionKind.AND:
            # Multiple parameters are ANDed by default
            params: Dict[str, Any] = {}
            for child in condition.and_:
                self._merge(params, self._convert_expression(child, ctx), ctx)
            return params
        if kind is ConditionKind.OR:
            return self._convert_or(condition.or_, ctx)
        return self._convert_not(condition.not_, ctx)

    def _convert_or(self, branches: List[FilterCondition], ctx: CompileContext) -> Dict[str, Any]:
        if not branches:
            ctx.degrade(
                DegradeReason.EMPTY_OR,
                "An empty OR matches nothing, which Contentful parameters cannot express; dropped",
            )
            return {}

        if any(b.is_always_true() for b in branches):
            # One branch constrains nothing, so neither does the OR
            return {}

        if len(branches) == 1:
            return self._convert_expression(branches[0], ctx)

        collapsed = self._collapse_same_field(branches, ctx)
        if collapsed is not None:
            return collapsed

        fields = sorted({b.field for b in branches if b.field is not None})
        ctx.degrade(
            DegradeReason.OR_ACROSS_FIELDS,
            "OR across different fields cannot be expressed as Contentful parameters; "
            "only the first branch is compiled, results may be a subset",
            field=",".join(fields) or None,
            operator="or",
        )
        return self._convert_expression(branches[0], ctx)

    def _collapse_same_field(self, branches: List[FilterCondition],
                             ctx: CompileContext) -> Optional[Dict[str, Any]]:
        """Collapse ``a == x || a == y`` (or ``in``) into ``a[in]=x,y``."""
        field = branches[0].field
        values: List[Any] = []
        for branch in branches:
            if branch.kind() is not ConditionKind.LEAF or branch.field != field or field is None:
                return None
            if branch.operator is FilterOperator.EQ and branch.value is not None:
                items = [branch.value]
            elif branch.operator is FilterOperator.IN and isinstance(branch.value, (list, tuple)):
                items = list(branch.value)
            else:
                return None
            values.extend(v for v in items if v not in values)

        if not self._valid_field(field, ctx, "or"):
            return {}
        try:
            return {f"{self._field_key(field)}[in]": to_param_value(values)}
        except LiteralFormatError as e:
            ctx.degrade(
                DegradeReason.INVALID_VALUE,
                f"Values for '{field}' cannot be compiled: {e}; condition dropped",
                field=field,
                operator="or",
            )
            return {}

    def _convert_not(self, inner: FilterCondition, ctx: CompileContext) -> Dict[str, Any]:
        if inner.is_always_true():
            ctx.degrade(
                DegradeReason.MATCH_NOTHING,
                "Negating an always-true condition matches nothing, "
                "which Contentful parameters cannot express; dropped",
                operator="not",
            )
            return {}
        if inner.kind() is ConditionKind.LEAF and inner.operator is FilterOperator.EQ:
            # not(field == value) is field[ne]=value
            return self._convert_condition(
                FilterCondition(field=inner.field, operator=FilterOperator.NE, value=inner.value),
                ctx,
            )
        ctx.degrade(
            DegradeReason.COMPLEX_NOT,
            "Only NOT around a simple equality can be expressed in Contentful; "
            "condition dropped and may require client-side filtering",
            field=inner.field,
            operator="not",
        )
        return {}

    def _convert_condition(self, condition: FilterCondition, ctx: CompileContext) -> Dict[str, Any]:
        """Convert a single leaf to one parameter."""
        op = condition.operator
        if not self.supports_operator(op):
            self._unsupported_operator(ctx, condition)
            return {}

        if op is FilterOperator.REFERENCES:
            return self._build_references(condition, ctx)

        field = condition.field
        if not self._valid_field(field, ctx, condition.operator_name):
            return {}
        key = self._field_key(field)

        if op is FilterOperator.DEFINED:
            return {f"{key}[exists]": "true"}
        if op is FilterOperator.UNDEFINED:
            return {f"{key}[exists]": "false"}

        if condition.value is None and op in (FilterOperator.EQ, FilterOperator.NE):
            # Null equality is an existence check
            return {f"{key}[exists]": "false" if op is FilterOperator.EQ else "true"}

        try:
            value = to_param_value(condition.value)
        except LiteralFormatError as e:
            self._invalid_value(ctx, condition, str(e))
            return {}

        return {f"{key}{self.OPERATOR_SUFFIXES[op]}": value}

    def _build_references(self, condition: FilterCondition, ctx: CompileContext) -> Dict[str, Any]:
        try:
            value = to_param_value(condition.value)
        except LiteralFormatError as e:
            self._invalid_value(ctx, condition, str(e))
            return {}

        if condition.field is None:
            if isinstance(condition.value, (list, tuple, set, frozenset)):
                ctx.degrade(
                    DegradeReason.INVALID_VALUE,
                    "links_to_entry accepts a single entry ID; condition dropped",
                    operator=condition.operator_name,
                )
                return {}
            return {"links_to_entry": value}

        if not self._valid_field(condition.field, ctx, condition.operator_name):
            return {}
        suffix = "[in]" if isinstance(condition.value, (list, tuple, set, frozenset)) else ""
        return {f"fields.{condition.field}.sys.id{suffix}": value}

    def _valid_field(self, field: Optional[str], ctx: CompileContext, operator: str) -> bool:
        if field is not None and _FIELD_RE.match(field):
            return True
        ctx.degrade(
            DegradeReason.INVALID_FIELD,
            f"'{field}' is not a valid Contentful field path; condition dropped",
            field=field,
            operator=operator,
        )
        return False

    def _field_key(self, field: str) -> str:
        """
        Get the parameter key for a field.
        System fields map to ``sys.*``, everything else lives under ``fields.``.
        """
        if field in self.SYSTEM_FIELDS:
            return self.SYSTEM_FIELDS[field]
        if field.startswith("sys.") or field.startswith("fields."):
            return field
        return f"fields.{field}"

    # -- projection ----------------------------------------------------------

    def _compile_projection(self, query: QueryConfig, ctx: CompileContext) -> Tuple[Optional[str], int]:
        """
        Compile projection to the ``select`` parameter.
        Format: "sys,fields.title,fields.slug"

        Returns:
            Tuple of (select string or None, expansion depth requested)
        """
        if query.projection is None:
            return None, 0

        fields = normalize_projection(query.projection, ctx)

        # Always include sys for document metadata
        select = ["sys"]
        for item in fields:
            name = item.name
            if item.kind is ProjectionKind.EXCLUDE:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_EXCLUSION,
                    f"Contentful select cannot exclude fields; '{name}' exclusion ignored",
                    field=name,
                )
                continue
            if item.kind is ProjectionKind.ALIAS:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_ALIAS,
                    f"Contentful cannot alias fields; '{name}' dropped",
                    field=name,
                )
                continue
            if item.kind is ProjectionKind.COMPUTED:
                ctx.degrade(
                    DegradeReason.UNSUPPORTED_COMPUTED,
                    f"Contentful cannot compute fields; '{name}' dropped",
                    field=name,
                )
                continue
            if name in self.SYSTEM_FIELDS:
                continue
            if not _FIELD_RE.match(name) or "." in name:
                ctx.degrade(
                    DegradeReason.INVALID_FIELD,
                    f"'{name}' is not a valid Contentful field name; dropped",
                    field=name,
                )
                continue
            if item.kind is ProjectionKind.NESTED:
                ctx.degrade(
                    DegradeReason.NESTED_PROJECTION,
                    f"Contentful select cannot pick sub-fields; selecting all of '{name}'",
                    field=name,
                )
            key = f"fields.{name}"
            if key not in select:
                select.append(key)

        return ",".join(select), expansion_depth(fields)

    def _compile_include(self, query: QueryConfig, expand_depth: int,
                         ctx: CompileContext) -> Optional[int]:
        """Reference resolution depth (``include``)."""
        depth = self._resolve_depth(query, ctx)
        if expand_depth > depth:
            if expand_depth > self.max_resolve_depth:
                ctx.degrade(
                    DegradeReason.RESOLVE_DEPTH_CLAMPED,
                    f"Expansion depth {expand_depth} clamped to {self.max_resolve_depth}",
                )
            depth = min(expand_depth, self.max_resolve_depth)

        if depth:
            return depth
        if query.resolve_references is not None and not query.resolve_references:
            # Contentful resolves one level unless told otherwise
            return 0
        return None

    # -- ordering, pagination, locale ----------------------------------------

    def _compile_order(self, query: QueryConfig, ctx: CompileContext) -> str:
        """
        Compile order by clauses to the ``order`` parameter.
        Format: "fields.date,-fields.title" (- prefix for descending)
        """
        clauses = []
        for order in query.order_by:
            if not self._valid_field(order.field, ctx, "order"):
                continue
            prefix = "-" if order.descending else ""
            clauses.append(f"{prefix}{self._field_key(order.field)}")
        return ",".join(clauses)

    def _compile_pagination(self, query: QueryConfig, ctx: CompileContext) -> Dict[str, int]:
        if query.cursor:
            ctx.degrade(
                DegradeReason.CURSOR_PAGINATION,
                "Contentful entries have no cursor pagination; cursor ignored",
            )

        pagination: Dict[str, int] = {}
        page = self._page(query)
        if page.offset:
            pagination["skip"] = page.offset
        # Contentful always pages; an open-ended offset uses the default limit
        limit = page.limit if page.limit is not None else self.default_limit
        if limit is not None:
            pagination["limit"] = limit
        return pagination

    def _compile_locale(self, query: QueryConfig, ctx: CompileContext) -> Optional[str]:
        if query.fallback_locale:
            ctx.degrade(
                DegradeReason.UNSUPPORTED_LOCALE,
                "Contentful fallback locales are configured per space; fallback_locale ignored",
            )
        if query.locale:
            return query.locale
        if self.include_all_locales:
            return "*"
        return self.default_locale

    # -- output helpers ------------------------------------------------------

    @staticmethod
    def to_params(compiled: CompiledQuery) -> Dict[str, Any]:
        """Merge filters and options into one parameter dict for the HTTP client."""
        params = dict(compiled.query)
        params.update(compiled.parameters)
        return params

    @classmethod
    def to_query_string(cls, compiled: CompiledQuery) -> str:
        """Encode the compiled query as a URL query string."""
        pairs = []
        for key, value in cls.to_params(compiled).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            pairs.append((key, value))
        return urlencode(pairs, safe="[],*")
