#!/usr/bin/env python3
"""
Tests for the Qdrant query compiler.
"""

import uuid
from datetime import datetime, timezone

from qdrant_client.models import (
    DatetimeRange, Direction, FieldCondition, Filter, HasIdCondition,
    IsEmptyCondition, IsNullCondition, MatchAny, MatchExcept, MatchText,
    MatchValue, OrderBy, PayloadField, PayloadSelectorExclude,
    PayloadSelectorInclude, Range
)

from contentbridge.query import (
    DegradeReason, QdrantQueryCompiler, QueryConfig, all_of, any_of, negate,
    where
)
from contentbridge.query import OrderBy as SortOrder


def compile_filter(compiler, *conditions):
    return compiler.compile(QueryConfig(filter=list(conditions)))


def reasons(compiled):
    return [n.reason for n in compiled.notices]


def match(key, value):
    return FieldCondition(key=key, match=MatchValue(value=value))


class TestQdrantFilter:
    """Test Filter compilation."""

    def test_simple_equality(self, qdrant):
        """Test type and equality conditions are ANDed."""
        compiled = qdrant.compile(QueryConfig(type="post", filter=[where("status", "==", "published")]))
        assert compiled.query == Filter(must=[match("_type", "post"), match("status", "published")])
        assert dict(compiled.parameters) == {"with_payload": True, "limit": 10}

    def test_empty_filter(self, qdrant):
        """Test no conditions produce no filter."""
        assert qdrant.compile(QueryConfig()).query is None

    def test_multiple_types(self, qdrant):
        """Test a type list becomes MatchAny."""
        compiled = qdrant.compile(QueryConfig(type=["post", "page"]))
        assert compiled.query == Filter(
            must=[FieldCondition(key="_type", match=MatchAny(any=["post", "page"]))]
        )

    def test_range(self, qdrant):
        """Test numeric and datetime ranges."""
        compiled = compile_filter(
            qdrant,
            where("views", ">=", 10),
            where("publishedAt", "<", "2024-01-01T00:00:00Z"),
        )
        views, published = compiled.query.must
        assert views == FieldCondition(key="views", range=Range(gte=10))
        assert isinstance(published.range, DatetimeRange)
        assert published.range.lt == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_membership(self, qdrant):
        """Test in and nin."""
        compiled = compile_filter(
            qdrant,
            where("status", "in", ["a", "b"]),
            where("tags", "nin", ["spam"]),
        )
        status, tags = compiled.query.must
        assert status == FieldCondition(key="status", match=MatchAny(any=["a", "b"]))
        assert isinstance(tags.match, MatchExcept)

    def test_contains(self, qdrant):
        """Test array containment."""
        compiled = compile_filter(
            qdrant,
            where("tags", "contains", "news"),
            where("tags", "containsAny", ["a", "b"]),
        )
        assert compiled.query.must == [
            match("tags", "news"),
            FieldCondition(key="tags", match=MatchAny(any=["a", "b"])),
        ]

    def test_contains_all(self, qdrant):
        """Test containsAll becomes one condition per value."""
        compiled = compile_filter(qdrant, where("tags", "containsAll", ["urgent", "critical"]))
        assert compiled.query.must == [match("tags", "urgent"), match("tags", "critical")]

    def test_text_match(self, qdrant):
        """Test full-text match."""
        compiled = compile_filter(qdrant, where("title", "match", "hello"))
        assert compiled.query.must == [FieldCondition(key="title", match=MatchText(text="hello"))]

    def test_existence(self, qdrant):
        """Test defined, undefined and null equality."""
        compiled = compile_filter(
            qdrant,
            where("slug", "defined"),
            where("image", "undefined"),
            where("deletedAt", "==", None),
        )
        assert compiled.query.must == [
            Filter(must_not=[IsEmptyCondition(is_empty=PayloadField(key="slug"))]),
            IsEmptyCondition(is_empty=PayloadField(key="image")),
            IsNullCondition(is_null=PayloadField(key="deletedAt")),
        ]

    def test_not_equal(self, qdrant):
        """Test != negates the match."""
        compiled = compile_filter(qdrant, where("status", "!=", "draft"))
        assert compiled.query.must == [Filter(must_not=[match("status", "draft")])]

    def test_point_ids(self, qdrant):
        """Test _id compiles to HasIdCondition."""
        point_id = str(uuid.uuid4())
        compiled = compile_filter(qdrant, where("_id", "==", point_id), where("_id", "nin", [1, 2]))
        assert compiled.query.must == [
            HasIdCondition(has_id=[point_id]),
            Filter(must_not=[HasIdCondition(has_id=[1, 2])]),
        ]

    def test_point_id_range_degrades(self, qdrant):
        """Test only equality and membership work on point IDs."""
        compiled = compile_filter(qdrant, where("_id", ">", 1))
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.UNSUPPORTED_OPERATOR]

    def test_invalid_point_id(self, qdrant):
        """Test point IDs must be integers or UUIDs."""
        compiled = compile_filter(qdrant, where("_id", "==", "not-a-uuid"))
        assert reasons(compiled) == [DegradeReason.INVALID_VALUE]

    def test_unsupported_operators(self, qdrant):
        """Test prefix, suffix and reference operators degrade."""
        compiled = compile_filter(
            qdrant,
            where("slug", "startsWith", "blog-"),
            where("file", "endsWith", ".pdf"),
            where(None, "references", "author-1"),
        )
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.UNSUPPORTED_OPERATOR] * 3

    def test_float_equality_degrades(self, qdrant):
        """Test exact matches on floats are rejected."""
        compiled = compile_filter(qdrant, where("score", "==", 0.5))
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.INVALID_VALUE]

    def test_payload_prefix(self):
        """Test document fields are prefixed and root fields are not."""
        compiler = QdrantQueryCompiler(payload_prefix="fields")
        compiled = compiler.compile(QueryConfig(type="post", filter=[where("status", "==", "published")]))
        assert compiled.query.must == [match("_type", "post"), match("fields.status", "published")]

    def test_exclude_drafts(self):
        """Test drafts are excluded by the root draft flag."""
        compiler = QdrantQueryCompiler(payload_prefix="fields", include_drafts=False)
        compiled = compiler.compile(QueryConfig())
        assert compiled.query == Filter(must_not=[match("_draft", True)])


class TestQdrantLogic:
    """Test AND/OR/NOT trees."""

    def test_or(self, qdrant):
        """Test OR becomes should."""
        compiled = compile_filter(qdrant, any_of(where("a", "==", 1), where("b", "==", 2)))
        assert compiled.query == Filter(must=[Filter(should=[match("a", 1), match("b", 2)])])

    def test_and_merges(self, qdrant):
        """Test top-level AND groups merge into must."""
        compiled = compile_filter(qdrant, all_of(where("a", "==", 1), where("b", "==", 2)))
        assert compiled.query == Filter(must=[match("a", 1), match("b", 2)])

    def test_not(self, qdrant):
        """Test NOT becomes must_not."""
        compiled = compile_filter(qdrant, negate(any_of(where("a", "==", 1), where("b", "==", 2))))
        assert compiled.query == Filter(
            must=[Filter(must_not=[Filter(should=[match("a", 1), match("b", 2)])])]
        )

    def test_empty_and(self, qdrant):
        """Test an empty AND adds nothing."""
        compiled = compile_filter(qdrant, all_of())
        assert compiled.query is None
        assert compiled.notices == ()

    def test_empty_or_degrades(self, qdrant):
        """Test an empty OR is dropped with a notice."""
        compiled = compile_filter(qdrant, any_of())
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.EMPTY_OR]

    def test_negated_empty_and_degrades(self, qdrant):
        """Test NOT of an always-true AND is reported, not silently widened."""
        compiled = compile_filter(qdrant, negate(all_of()))
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.MATCH_NOTHING]

    def test_or_with_empty_and_matches_everything(self, qdrant):
        """Test an always-true branch makes the whole OR unconstrained."""
        compiled = compile_filter(qdrant, any_of(all_of(), where("a", "==", 1)))
        assert compiled.query is None
        assert compiled.notices == ()

    def test_empty_and_inside_not(self, qdrant):
        """Test always-true children are left out of a negated AND."""
        compiled = compile_filter(qdrant, negate(all_of(all_of(), where("a", "==", 1))))
        assert compiled.query == Filter(must=[Filter(must_not=[match("a", 1)])])

    def test_negated_empty_contains_all_degrades(self, qdrant):
        """Test NOT of an empty containsAll is reported."""
        compiled = compile_filter(qdrant, negate(where("tags", "containsAll", [])))
        assert compiled.query is None
        assert reasons(compiled) == [DegradeReason.MATCH_NOTHING]


class TestQdrantOptions:
    """Test payload selection, ordering and pagination."""

    def test_include_projection(self, qdrant):
        """Test included keys with root fields and dotted nesting."""
        compiled = qdrant.compile(QueryConfig(projection={"title": True, "author": {"name": True}}))
        assert compiled.parameters["with_payload"] == PayloadSelectorInclude(
            include=["_createdAt", "_type", "_updatedAt", "title", "author.name"]
        )

    def test_exclude_projection(self, qdrant):
        """Test exclusion-only projections use an exclude selector."""
        compiled = qdrant.compile(QueryConfig(projection={"body": False}))
        assert compiled.parameters["with_payload"] == PayloadSelectorExclude(exclude=["body"])
        assert compiled.notices == ()

    def test_mixed_projection_degrades(self, qdrant):
        """Test exclusions are dropped when keys are also included."""
        compiled = qdrant.compile(QueryConfig(projection={"title": True, "body": False}))
        assert isinstance(compiled.parameters["with_payload"], PayloadSelectorInclude)
        assert reasons(compiled) == [DegradeReason.UNSUPPORTED_EXCLUSION]

    def test_expansion_is_out_of_band(self, qdrant):
        """Test expansions select the raw field and report a resolve depth."""
        compiled = qdrant.compile(QueryConfig(projection={"author": {"expand": True}}))
        assert "author" in compiled.parameters["with_payload"].include
        assert compiled.parameters["resolve_depth"] == 1

    def test_order(self, qdrant):
        """Test one sort key is kept."""
        compiled = qdrant.compile(QueryConfig(
            order_by=[SortOrder("publishedAt", "desc"), SortOrder("title")],
        ))
        assert compiled.parameters["order_by"] == OrderBy(key="publishedAt", direction=Direction.DESC)
        assert reasons(compiled) == [DegradeReason.MULTI_SORT]

    def test_offset_degrades(self, qdrant):
        """Test numeric offsets are ignored."""
        compiled = qdrant.compile(QueryConfig(offset=20, limit=5))
        assert compiled.parameters["limit"] == 5
        assert "offset" not in compiled.parameters
        assert reasons(compiled) == [DegradeReason.OFFSET_PAGINATION]

    def test_cursor_passthrough(self, qdrant):
        """Test the cursor is the scroll offset."""
        compiled = qdrant.compile(QueryConfig(cursor="5f1c9b0e-0000-4000-8000-000000000000"))
        assert compiled.parameters["offset"] == "5f1c9b0e-0000-4000-8000-000000000000"
        assert compiled.notices == ()

    def test_cursor_with_order_degrades(self, qdrant):
        """Test cursors cannot be combined with ordering."""
        compiled = qdrant.compile(QueryConfig(cursor="abc", order_by=[SortOrder("title")]))
        assert "offset" not in compiled.parameters
        assert reasons(compiled) == [DegradeReason.CURSOR_PAGINATION]

    def test_locale_degrades(self, qdrant):
        """Test locales are reported as unsupported."""
        compiled = qdrant.compile(QueryConfig(locale="de"))
        assert reasons(compiled) == [DegradeReason.UNSUPPORTED_LOCALE]

    def test_scroll_kwargs(self, qdrant):
        """Test scroll keyword arguments."""
        compiled = qdrant.compile(QueryConfig(
            type="post",
            resolve_references=2,
            params={"with_vectors": False},
        ))
        assert QdrantQueryCompiler.scroll_kwargs(compiled, "documents") == {
            "collection_name": "documents",
            "scroll_filter": Filter(must=[match("_type", "post")]),
            "with_payload": True,
            "limit": 10,
            "with_vectors": False,
        }

    def test_get_by_id(self, qdrant):
        """Test lookup by ID."""
        compiled = qdrant.build_get_by_id_query(7)
        assert compiled.query == Filter(must=[HasIdCondition(has_id=[7])])
        assert compiled.parameters["limit"] == 1
