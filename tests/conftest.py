"""
Shared pytest fixtures for contentbridge tests.
Provides compilers and sample queries for all test suites.
"""

import logging
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from contentbridge.query import (
    ContentfulQueryCompiler, GROQQueryCompiler, OrderBy, QdrantQueryCompiler,
    QueryConfig, where
)

# Keep degrade warnings out of test output
logging.basicConfig(level=logging.CRITICAL)


@pytest.fixture
def groq():
    """Provide a GROQ compiler with default settings."""
    return GROQQueryCompiler()


@pytest.fixture
def contentful():
    """Provide a Contentful compiler with default settings."""
    return ContentfulQueryCompiler()


@pytest.fixture
def qdrant():
    """Provide a Qdrant compiler with default settings."""
    return QdrantQueryCompiler()


@pytest.fixture
def blog_query():
    """Published posts with more than 100 views, newest first."""
    return QueryConfig(
        type="post",
        filter=[
            where("status", "==", "published"),
            where("views", ">", 100),
        ],
        order_by=[OrderBy("publishedAt", "desc")],
        limit=10,
    )
