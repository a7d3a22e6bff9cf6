#!/usr/bin/env python3
"""
GROQ backend.
Compiles QueryConfig to Sanity GROQ query strings with ``$pN`` parameters.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ValidationError
from .base import (
    CompileContext, ConditionKind, DegradeReason, FilterCondition,
    FilterOperator, QueryCompilerBackend, QueryConfig
)
from .formatter import LiteralFormatError, placeholder, to_json_value
from .projection import ProjectionKind, normalize_projection

logger = logging.getLogger(__name__)

_SEGMENT = r"[A-Za-z_][A-Za-z0-9_]*(?:\[\d*\])?"
_PATH_RE = re.compile(rf"^{_SEGMENT}(?:(?:\.|->){_SEGMENT})*$")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FUNCTION_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:::[A-Za-z_][A-Za-z0-9_]*)?$")

DRAFTS_FILTER = '!(_id in path("drafts.**"))'

# Fragment for a node that constrains nothing (``and: []``)
MATCH_ALL = "true"


def is_valid_path(path: str) -> bool:
    """Check that ``path`` is a plain GROQ attribute path (no expressions)."""
    return isinstance(path, str) and bool(_PATH_RE.match(path))


class GROQQueryCompiler(QueryCompilerBackend):
    """
    Converts QueryConfig to GROQ.

    Output shape: ``*[<filters>] | order(...)[<slice>] {<projection>}``
    """

    TARGET = "groq"
    ACCEPTS_RAW_GLOBAL_FILTER = True

    SUPPORTED_OPERATORS = frozenset({
        FilterOperator.EQ, FilterOperator.NE,
        FilterOperator.GT, FilterOperator.GTE,
        FilterOperator.LT, FilterOperator.LTE,
        FilterOperator.IN, FilterOperator.NIN,
        FilterOperator.CONTAINS, FilterOperator.CONTAINS_ANY, FilterOperator.CONTAINS_ALL,
        FilterOperator.MATCH, FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH,
        FilterOperator.DEFINED, FilterOperator.UNDEFINED,
        FilterOperator.REFERENCES,
    })

    INFIX_OPERATORS = {
        FilterOperator.EQ: "==",
        FilterOperator.NE: "!=",
        FilterOperator.GT: ">",
        FilterOperator.GTE: ">=",
        FilterOperator.LT: "<",
        FilterOperator.LTE: "<=",
        FilterOperator.IN: "in",
        FilterOperator.MATCH: "match",
    }

    # Always projected so adapters can rebuild documents
    SYSTEM_FIELDS = ("_id", "_type", "_createdAt", "_updatedAt")

    def _compile(self, query: QueryConfig, ctx: CompileContext) -> Tuple[str, Dict[str, Any]]:
        filter_clause = self._compile_filter(query, ctx)
        order_clause = self._compile_order(query, ctx)
        slice_clause = self._compile_slice(query, ctx)
        projection = self._compile_projection(query, ctx)

        # Assemble: *[filter] | order(...)[slice] {projection}
        groq = "*"
        if filter_clause:
            groq += f"[{filter_clause}]"
        if order_clause:
            groq += f" | order({order_clause})"
        if slice_clause:
            groq += f"[{slice_clause}]"
        if projection:
            groq += f" {projection}"

        return groq, self._compile_parameters(query, ctx)

    # -- base selector and filters -------------------------------------------

    def _compile_filter(self, query: QueryConfig, ctx: CompileContext) -> str:
        filters: List[str] = []

        types = query.types
        if len(types) == 1:
            filters.append(f"_type == {json.dumps(types[0])}")
        elif types:
            filters.append(f"_type in {json.dumps(types)}")

        if self._drafts_included(query) is False:
            filters.append(DRAFTS_FILTER)

        filters.extend(self.compile_conditions(query.filter, ctx))

        if isinstance(self.global_filter, str):
            filters.append(self.global_filter)
        else:
            filters.extend(self.compile_conditions(self.global_filter, ctx))

        return " && ".join(f for f in filters if f != MATCH_ALL)

    def compile_conditions(self, conditions: List[FilterCondition], ctx: CompileContext) -> List[str]:
        """Compile a list of conditions; fragments of dropped conditions are left out."""
        parts = [self._convert_expression(c, ctx) for c in conditions]
        return [p for p in parts if p]

    def _convert_expression(self, condition: FilterCondition, ctx: CompileContext) -> str:
        kind = condition.kind()
        if kind is ConditionKind.LEAF:
            return self._convert_condition(condition, ctx)
        return self._convert_compound(kind, condition, ctx)

    def _convert_compound(self, kind: ConditionKind, condition: FilterCondition,
                          ctx: CompileContext) -> str:
        """Convert compound expression (AND/OR/NOT)."""
        if kind is ConditionKind.AND:
            parts = self.compile_conditions(condition.and_, ctx)
            constraining = [p for p in parts if p != MATCH_ALL]
            if constraining:
                return f"({' && '.join(constraining)})"
            # Vacuously true, unless every child was dropped
            return MATCH_ALL if parts or not condition.and_ else ""

        if kind is ConditionKind.OR:
            if not condition.or_:
                # Empty OR matches nothing
                return "false"
            parts = self.compile_conditions(condition.or_, ctx)
            if MATCH_ALL in parts:
                return MATCH_ALL
            return f"({' || '.join(parts)})" if parts else ""

        inner = self._convert_expression(condition.not_, ctx)
        if inner == MATCH_ALL:
            return "false"
        return f"!({inner})" if inner else ""

    def _convert_condition(self, condition: FilterCondition, ctx: CompileContext) -> str:
        """Convert a single leaf to GROQ."""
        op = condition.operator
        if not self.supports_operator(op):
            self._unsupported_operator(ctx, condition)
            return ""

        field = condition.field
        if field is not None and not is_valid_path(field):
            ctx.degrade(
                DegradeReason.INVALID_FIELD,
                f"'{field}' is not a valid GROQ field path; condition dropped",
                field=field,
                operator=condition.operator_name,
            )
            return ""

        try:
            return self._build_operator(field, op, condition.value, ctx)
        except LiteralFormatError as e:
            self._invalid_value(ctx, condition, str(e))
            return ""

    def _build_operator(self, field: Optional[str], op: FilterOperator, value: Any,
                        ctx: CompileContext) -> str:
        if op is FilterOperator.DEFINED:
            return f"defined({field})"
        if op is FilterOperator.UNDEFINED:
            return f"!defined({field})"

        # Validate the literal before any placeholder is registered
        value = to_json_value(value)

        if op in (FilterOperator.IN, FilterOperator.NIN):
            values = value if isinstance(value, list) else [value]
            clause = f"{field} in {placeholder(ctx, values)}"
            return clause if op is FilterOperator.IN else f"!({clause})"

        if op is FilterOperator.CONTAINS:
            return f"{placeholder(ctx, value)} in {field}"

        if op in (FilterOperator.CONTAINS_ANY, FilterOperator.CONTAINS_ALL):
            return self._build_contains_many(field, op, value, ctx)

        if op in (FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH):
            if not isinstance(value, str):
                raise LiteralFormatError("text patterns must be strings")
            pattern = f"{value}*" if op is FilterOperator.STARTS_WITH else f"*{value}"
            return f"{field} match {placeholder(ctx, pattern)}"

        if op is FilterOperator.REFERENCES:
            return self._build_references(field, value, ctx)

        return f"{field} {self.INFIX_OPERATORS[op]} {placeholder(ctx, value)}"

    def _build_contains_many(self, field: str, op: FilterOperator, value: Any,
                             ctx: CompileContext) -> str:
        if not isinstance(value, list):
            return f"{placeholder(ctx, value)} in {field}"
        if not value:
            # Nothing to match any of; everything matches all of nothing
            return "false" if op is FilterOperator.CONTAINS_ANY else MATCH_ALL
        joiner = " || " if op is FilterOperator.CONTAINS_ANY else " && "
        checks = [f"{placeholder(ctx, v)} in {field}" for v in value]
        return f"({joiner.join(checks)})"

    def _build_references(self, field: Optional[str], value: Any, ctx: CompileContext) -> str:
        ref = placeholder(ctx, value)
        if field is None:
            return f"references({ref})"
        # Single reference or array of references
        return f"({field}._ref == {ref} || {ref} in {field}[]._ref)"

    # -- projection ----------------------------------------------------------

    def _compile_projection(self, query: QueryConfig, ctx: CompileContext) -> str:
        fields = normalize_projection(query.projection, ctx)
        depth = self._resolve_depth(query, ctx)

        if depth and not any(f.kind is ProjectionKind.EXPAND for f in fields):
            ctx.degrade(
                DegradeReason.RESOLVE_OUT_OF_BAND,
                "GROQ resolves references through expansion descriptors in the projection; "
                "resolve_references alone has no effect",
            )

        if query.projection is None:
            return ""

        parts: List[str] = []
        named = set()
        for item in fields:
            rendered = self._compile_projection_field(item, ctx, expand_depth=0)
            if rendered:
                parts.append(rendered)
                named.add(item.name)
        system = [f for f in self.SYSTEM_FIELDS if f not in named]
        return "{" + ", ".join(system + parts) + "}"

    def _compile_projection_fields(self, fields: List[Any], ctx: CompileContext,
                                   expand_depth: int) -> List[str]:
        parts: List[str] = []
        for item in fields:
            rendered = self._compile_projection_field(item, ctx, expand_depth)
            if rendered:
                parts.append(rendered)
        return parts

    def _compile_projection_field(self, item: Any, ctx: CompileContext,
                                  expand_depth: int) -> str:
        name = item.name
        key = json.dumps(name)

        if item.kind is ProjectionKind.EXCLUDE:
            ctx.degrade(
                DegradeReason.UNSUPPORTED_EXCLUSION,
                f"GROQ projections cannot exclude fields; '{name}' exclusion ignored",
                field=name,
            )
            return ""

        if item.kind is ProjectionKind.ALIAS:
            if not is_valid_path(item.path):
                ctx.degrade(
                    DegradeReason.INVALID_FIELD,
                    f"Alias path '{item.path}' for '{name}' is not a valid GROQ path; dropped",
                    field=name,
                )
                return ""
            return f"{key}: {item.path}"

        if item.kind is ProjectionKind.COMPUTED:
            return self._compile_computed(item, ctx)

        if not _NAME_RE.match(name):
            ctx.degrade(
                DegradeReason.INVALID_FIELD,
                f"'{name}' is not a valid GROQ field name; dropped",
                field=name,
            )
            return ""

        if item.kind is ProjectionKind.INCLUDE:
            return name

        if item.kind is ProjectionKind.NESTED:
            nested = self._compile_projection_fields(list(item.fields), ctx, expand_depth)
            return f"{name}{{{', '.join(nested)}}}" if nested else name

        # Reference expansion
        if expand_depth + 1 > self.max_resolve_depth:
            ctx.degrade(
                DegradeReason.RESOLVE_DEPTH_CLAMPED,
                f"Expansion of '{name}' exceeds max resolve depth {self.max_resolve_depth}; "
                "reference left unresolved",
                field=name,
            )
            return name
        if item.fields is None:
            return f"{key}: {name}->"
        nested = self._compile_projection_fields(list(item.fields), ctx, expand_depth + 1)
        return f"{key}: {name}->{{{', '.join(nested)}}}"

    def _compile_computed(self, item: Any, ctx: CompileContext) -> str:
        if not _FUNCTION_RE.match(item.fn):
            ctx.degrade(
                DegradeReason.INVALID_PROJECTION,
                f"'{item.fn}' is not a valid GROQ function name; '{item.name}' dropped",
                field=item.name,
            )
            return ""
        try:
            args = [to_json_value(a) for a in item.args]
        except LiteralFormatError as e:
            ctx.degrade(
                DegradeReason.INVALID_VALUE,
                f"Argument for computed field '{item.name}' cannot be compiled: {e}; dropped",
                field=item.name,
            )
            return ""
        refs = ", ".join(placeholder(ctx, a) for a in args)
        return f"{json.dumps(item.name)}: {item.fn}({refs})"

    # -- ordering and pagination ---------------------------------------------

    def _compile_order(self, query: QueryConfig, ctx: CompileContext) -> str:
        clauses = []
        for order in query.order_by:
            if not is_valid_path(order.field):
                ctx.degrade(
                    DegradeReason.INVALID_FIELD,
                    f"'{order.field}' is not a valid GROQ sort field; ignored",
                    field=order.field,
                )
                continue
            clauses.append(f"{order.field} {order.direction}")
        return ", ".join(clauses)

    def _compile_slice(self, query: QueryConfig, ctx: CompileContext) -> str:
        if query.cursor:
            ctx.degrade(
                DegradeReason.CURSOR_PAGINATION,
                "GROQ has no cursor pagination; cursor ignored",
            )

        page = self._page(query)
        if page.is_empty:
            return ""
        if page.end is None:
            # Inclusive range to the last element
            return f"{page.offset}..-1"
        return f"{page.offset}...{page.end}"

    # -- parameters and localisation -----------------------------------------

    def _compile_parameters(self, query: QueryConfig, ctx: CompileContext) -> Dict[str, Any]:
        parameters = dict(ctx.params)

        for key, value in query.params.items():
            if key in parameters:
                ctx.degrade(
                    DegradeReason.PARAMETER_COLLISION,
                    f"Passthrough parameter '{key}' collides with a compiled placeholder; ignored",
                )
                continue
            parameters[key] = value

        locale = query.locale or self.default_locale
        if locale and "locale" not in parameters:
            parameters["locale"] = locale

        fallback = query.fallback_locale or (self.fallback_locales[0] if self.fallback_locales else None)
        if fallback and "fallbackLocale" not in parameters:
            parameters["fallbackLocale"] = fallback

        return parameters

    def compile_localized_field(self, field: str, locale: Optional[str] = None) -> str:
        """
        Compile a localized field access with coalesce.
        Example: coalesce(title.en, title.de, title)
        """
        if not is_valid_path(field):
            raise ValidationError(f"'{field}' is not a valid GROQ field path")

        target_locale = locale or self.default_locale
        locales = []
        if target_locale:
            locales.append(target_locale)
        locales.extend(loc for loc in self.fallback_locales if loc not in locales)

        if not locales:
            return field

        for loc in locales:
            if not _NAME_RE.match(loc.replace("-", "_")):
                raise ValidationError(f"'{loc}' is not a valid locale key")

        paths = [f"{field}.{loc.replace('-', '_')}" for loc in locales] + [field]
        return f"coalesce({', '.join(paths)})"
