"""
ContentBridge Query Compiler
Compile one content query description to GROQ, Contentful and Qdrant queries.
"""

from .exceptions import ContentBridgeError, QueryError, ValidationError
from .config import Config
from .query import (
    QueryConfig,
    CompiledQuery,
    FilterCondition,
    FilterOperator,
    OrderBy,
    DegradeNotice,
    DegradeReason,
    GROQQueryCompiler,
    ContentfulQueryCompiler,
    QdrantQueryCompiler,
    COMPILERS,
    create_compiler,
)

__version__ = "1.0.0"

__all__ = [
    "ContentBridgeError",
    "QueryError",
    "ValidationError",
    "Config",
    "QueryConfig",
    "CompiledQuery",
    "FilterCondition",
    "FilterOperator",
    "OrderBy",
    "DegradeNotice",
    "DegradeReason",
    "GROQQueryCompiler",
    "ContentfulQueryCompiler",
    "QdrantQueryCompiler",
    "COMPILERS",
    "create_compiler",
]
