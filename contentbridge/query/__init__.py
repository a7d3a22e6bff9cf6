"""
Backend-agnostic query compilation for multiple content backends.

This module provides one declarative query description (QueryConfig) and
compiles it to the native query of a content backend (GROQ, Contentful,
Qdrant, ...). Constructs a backend cannot express are degraded and reported
as structured notices on the compiled query.

Example usage:
    from contentbridge.query import QueryConfig, create_compiler, where, any_of

    query = QueryConfig(
        type="post",
        filter=[
            where("status", "==", "published"),
            any_of(where("views", ">", 100), where("featured", "==", True)),
        ],
        order_by=[{"field": "publishedAt", "direction": "desc"}],
        limit=10,
    )

    # Convert to GROQ
    compiler = create_compiler("groq")
    compiled = compiler.compile(query)
    groq, params = compiled.query, compiled.parameters

    for notice in compiled.notices:
        print(notice.reason.value, notice.message)
"""

from typing import Dict, Type

from .base import (
    FilterOperator,
    ConditionKind,
    FilterCondition,
    OrderBy,
    QueryConfig,
    CompiledQuery,
    CompileContext,
    DegradeNotice,
    DegradeReason,
    QueryCompilerBackend,
    FilterError,
    InvalidFilterError,
    FilterDepthError,
    DegradedQueryError,
    where,
    all_of,
    any_of,
    negate,
    validate_conditions,
)
from .pagination import Page, resolve_page, resolve_depth
from .projection import ProjectionKind, normalize_projection

from .groq_backend import GROQQueryCompiler
from .contentful_backend import ContentfulQueryCompiler
from .qdrant_backend import QdrantQueryCompiler

from ..exceptions import ValidationError

COMPILERS: Dict[str, Type[QueryCompilerBackend]] = {
    GROQQueryCompiler.TARGET: GROQQueryCompiler,
    ContentfulQueryCompiler.TARGET: ContentfulQueryCompiler,
    QdrantQueryCompiler.TARGET: QdrantQueryCompiler,
}


def create_compiler(target: str, **config) -> QueryCompilerBackend:
    """
    Create a compiler for a target.

    Args:
        target: Registered target name ("groq", "contentful", "qdrant")
        **config: Constructor options (see QueryCompilerBackend and Config)

    Raises:
        ValidationError: If no compiler is registered for ``target``
    """
    try:
        compiler_cls = COMPILERS[target.lower()]
    except (KeyError, AttributeError):
        raise ValidationError(
            f"Unknown query target {target!r}",
            context={"available": sorted(COMPILERS)},
        )
    return compiler_cls(**config)


__all__ = [
    # Core classes
    'FilterOperator',
    'ConditionKind',
    'FilterCondition',
    'OrderBy',
    'QueryConfig',
    'CompiledQuery',
    'CompileContext',
    'DegradeNotice',
    'DegradeReason',
    'QueryCompilerBackend',

    # Builders
    'where',
    'all_of',
    'any_of',
    'negate',
    'validate_conditions',

    # Pagination and projection
    'Page',
    'resolve_page',
    'resolve_depth',
    'ProjectionKind',
    'normalize_projection',

    # Backends
    'GROQQueryCompiler',
    'ContentfulQueryCompiler',
    'QdrantQueryCompiler',
    'COMPILERS',
    'create_compiler',

    # Errors
    'FilterError',
    'InvalidFilterError',
    'FilterDepthError',
    'DegradedQueryError',
]
