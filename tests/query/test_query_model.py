#!/usr/bin/env python3
"""
Tests for the filter AST, query configuration and compiled output model.
"""

import dataclasses

import pytest

from contentbridge.exceptions import ValidationError
from contentbridge.query import (
    COMPILERS, CompiledQuery, CompileContext, ConditionKind,
    ContentfulQueryCompiler, DegradeNotice, DegradeReason, FilterCondition,
    FilterDepthError, FilterOperator, GROQQueryCompiler, InvalidFilterError,
    OrderBy, QdrantQueryCompiler, QueryConfig, all_of, any_of,
    create_compiler, negate, validate_conditions, where
)


def nested_not(levels):
    """A leaf wrapped in ``levels`` not nodes."""
    condition = where("a", "==", 1)
    for _ in range(levels):
        condition = negate(condition)
    return condition


class TestFilterOperator:
    """Test the operator enumeration."""

    def test_from_string(self):
        """Test operator lookup by wire value."""
        assert FilterOperator.from_string("==") is FilterOperator.EQ
        assert FilterOperator.from_string("containsAny") is FilterOperator.CONTAINS_ANY
        assert FilterOperator.from_string("like") is None

    def test_is_valid(self):
        """Test operator validation."""
        assert FilterOperator.is_valid("startsWith")
        assert not FilterOperator.is_valid("$eq")


class TestFilterCondition:
    """Test filter node shapes."""

    def test_leaf(self):
        """Test leaf detection and operator coercion."""
        condition = FilterCondition(field="status", operator="==", value="published")
        assert condition.kind() is ConditionKind.LEAF
        assert condition.operator is FilterOperator.EQ

    def test_unknown_operator_is_preserved(self):
        """Test unknown operators stay on the leaf as strings."""
        condition = where("title", "like", "x")
        assert condition.operator == "like"
        assert condition.kind() is ConditionKind.LEAF

    def test_combinators(self):
        """Test and/or/not detection."""
        assert all_of(where("a", "==", 1)).kind() is ConditionKind.AND
        assert any_of().kind() is ConditionKind.OR
        assert negate(where("a", "==", 1)).kind() is ConditionKind.NOT

    def test_no_shape(self):
        """Test a node with nothing populated is rejected."""
        with pytest.raises(InvalidFilterError):
            FilterCondition().kind()

    def test_multiple_shapes(self):
        """Test a node mixing leaf and combinator is rejected."""
        condition = FilterCondition(field="a", operator="==", value=1, or_=[])
        with pytest.raises(InvalidFilterError, match="several shapes"):
            condition.kind()

    def test_leaf_without_field(self):
        """Test only references may omit the field."""
        with pytest.raises(InvalidFilterError, match="requires a field"):
            FilterCondition(operator="==", value=1).kind()
        assert where(None, "references", "abc").kind() is ConditionKind.LEAF

    def test_leaf_without_operator(self):
        """Test a leaf needs an operator."""
        with pytest.raises(InvalidFilterError, match="no operator"):
            FilterCondition(field="a", value=1).kind()

    def test_non_string_operator(self):
        """Test an operator that is neither a FilterOperator nor a string is rejected."""
        with pytest.raises(InvalidFilterError, match="Operator must be a string"):
            FilterCondition(field="a", operator=["=="], value=1).kind()
        with pytest.raises(InvalidFilterError):
            FilterCondition(field="a", operator={"op": "=="}, value=1).kind()

    def test_is_always_true(self):
        """Test only AND nodes without constraining children are always true."""
        assert all_of().is_always_true()
        assert all_of(all_of(), all_of()).is_always_true()
        assert not all_of(where("a", "==", 1)).is_always_true()
        assert not any_of().is_always_true()
        assert not negate(all_of()).is_always_true()
        assert not where("a", "==", 1).is_always_true()


class TestFromDict:
    """Test parsing the dictionary form."""

    def test_nested(self):
        """Test nested combinators are parsed."""
        condition = FilterCondition.from_dict({
            "and": [
                {"field": "type", "operator": "==", "value": "alert"},
                {"or": [
                    {"field": "priority", "operator": ">=", "value": 7},
                    {"not": {"field": "urgent", "operator": "==", "value": False}},
                ]},
            ]
        })
        assert condition.kind() is ConditionKind.AND
        inner = condition.and_[1]
        assert inner.kind() is ConditionKind.OR
        assert inner.or_[1].not_.field == "urgent"

    def test_unknown_keys(self):
        """Test unknown keys are rejected."""
        with pytest.raises(InvalidFilterError, match="Unknown filter keys"):
            FilterCondition.from_dict({"field": "a", "operator": "==", "value": 1, "$gt": 2})

    def test_error_path(self):
        """Test errors carry the path of the bad node."""
        with pytest.raises(InvalidFilterError) as exc_info:
            FilterCondition.from_dict({"and": [{"field": "a", "operator": "==", "value": 1}, {}]})
        assert exc_info.value.path == "filter.and[1]"
        assert exc_info.value.to_dict()["context"] == {"path": "filter.and[1]"}

    def test_max_depth_protection(self):
        """Test max depth protection against DoS."""
        data = {"field": "a", "operator": "==", "value": 1}
        for _ in range(3):
            data = {"not": data}

        # This should work (depth 4)
        FilterCondition.from_dict(data, max_depth=4)

        # This should fail (depth 5)
        with pytest.raises(FilterDepthError, match="depth"):
            FilterCondition.from_dict({"not": data}, max_depth=4)


class TestValidateConditions:
    """Test whole-tree validation."""

    def test_depth(self):
        """Test depth is enforced on built trees."""
        validate_conditions([nested_not(9)], max_depth=10)
        with pytest.raises(FilterDepthError):
            validate_conditions([nested_not(10)], max_depth=10)

    def test_walks_every_branch(self):
        """Test a malformed node deep in an OR is found."""
        bad = any_of(where("a", "==", 1), all_of(FilterCondition()))
        with pytest.raises(InvalidFilterError) as exc_info:
            validate_conditions([where("b", "==", 2), bad])
        assert exc_info.value.path == "filter[1].or[1].and[0]"

    def test_compile_raises_before_output(self, groq, contentful, qdrant):
        """Test structural errors are fatal on every target."""
        for compiler in (groq, contentful, qdrant):
            with pytest.raises(InvalidFilterError):
                compiler.compile(QueryConfig(filter=[FilterCondition()]))
            with pytest.raises(FilterDepthError):
                compiler.compile(QueryConfig(filter=[nested_not(10)]))

    def test_compile_rejects_non_string_operator(self, groq, contentful, qdrant):
        """Test a list operator fails as an invalid filter on every target."""
        for compiler in (groq, contentful, qdrant):
            with pytest.raises(InvalidFilterError):
                compiler.compile({"filter": [{"field": "a", "operator": ["=="], "value": 1}]})
            with pytest.raises(InvalidFilterError):
                compiler.compile(QueryConfig(filter=[FilterCondition(field="a", operator=["=="])]))

    def test_supports_operator_rejects_unhashable(self, groq):
        """Test supports_operator answers False for non-operator values."""
        assert groq.supports_operator(FilterOperator.EQ)
        assert not groq.supports_operator(["=="])
        assert not groq.supports_operator("like")

    def test_dict_filters_use_compiler_depth(self):
        """Test dict filters on a QueryConfig honour the compiler's max_depth."""
        data = {"field": "a", "operator": "==", "value": 1}
        for _ in range(12):
            data = {"not": data}
        query = QueryConfig(filter=[data])

        compiled = GROQQueryCompiler(max_depth=20).compile(query)
        assert compiled.query.startswith("*[!(!(")

        with pytest.raises(FilterDepthError) as exc_info:
            GROQQueryCompiler().compile(query)
        assert exc_info.value.path.startswith("filter[0]")


class TestOrderBy:
    """Test sort configuration."""

    def test_direction_normalized(self):
        """Test directions are case-insensitive."""
        assert OrderBy("title", "DESC").descending
        assert OrderBy("title").direction == "asc"

    def test_invalid_direction(self):
        """Test invalid directions raise."""
        with pytest.raises(ValidationError, match="sort direction"):
            OrderBy("title", "sideways")


class TestQueryConfig:
    """Test query configuration validation."""

    def test_types(self):
        """Test single and multiple types."""
        assert QueryConfig(type="post").types == ["post"]
        assert QueryConfig(type=("post", "page")).types == ["post", "page"]
        assert QueryConfig().types == []

    def test_empty_type_list(self):
        """Test an empty type list is rejected."""
        with pytest.raises(ValidationError):
            QueryConfig(type=[])

    def test_negative_limit(self):
        """Test limit and offset must be non-negative integers."""
        with pytest.raises(ValidationError):
            QueryConfig(limit=-1)
        with pytest.raises(ValidationError):
            QueryConfig(offset=True)

    def test_resolve_references(self):
        """Test resolve_references accepts booleans and depths."""
        assert QueryConfig(resolve_references=True).resolve_references is True
        assert QueryConfig(resolve_references=3).resolve_references == 3
        with pytest.raises(ValidationError):
            QueryConfig(resolve_references=-2)

    def test_dicts_are_converted(self):
        """Test order dicts become model objects and filter dicts wait for compile."""
        query = QueryConfig(
            filter=[{"field": "a", "operator": "==", "value": 1}],
            order_by=[{"field": "title", "direction": "desc"}],
        )
        assert query.filter[0] == {"field": "a", "operator": "==", "value": 1}
        assert query.order_by[0].descending

    def test_filter_dicts_compile(self, groq):
        """Test dict filters are parsed when the query is compiled."""
        compiled = groq.compile(QueryConfig(filter=[{"field": "a", "operator": "==", "value": 1}]))
        assert compiled.query == "*[a == $p0]"

    def test_from_dict_camel_case(self):
        """Test the camelCase wire shape."""
        query = QueryConfig.from_dict({
            "type": "post",
            "filter": [{"field": "status", "operator": "==", "value": "published"}],
            "orderBy": [{"field": "publishedAt", "direction": "desc"}],
            "fallbackLocale": "de",
            "includeDrafts": False,
            "resolveReferences": 2,
            "limit": 5,
        })
        assert query.order_by[0].field == "publishedAt"
        assert query.fallback_locale == "de"
        assert query.include_drafts is False
        assert query.resolve_references == 2
        assert query.limit == 5


class TestCompiledQuery:
    """Test compiled output immutability."""

    def test_frozen(self, groq, blog_query):
        """Test compiled queries cannot be mutated."""
        compiled = groq.compile(blog_query)
        with pytest.raises(dataclasses.FrozenInstanceError):
            compiled.query = "*"
        with pytest.raises(TypeError):
            compiled.parameters["p0"] = "draft"

    def test_to_dict(self):
        """Test serialization including notices."""
        notice = DegradeNotice(DegradeReason.MULTI_SORT, "ignored", field="title")
        compiled = CompiledQuery("qdrant", None, {"limit": 10}, (notice,))
        assert compiled.degraded
        assert compiled.to_dict() == {
            "target": "qdrant",
            "query": None,
            "parameters": {"limit": 10},
            "notices": [{
                "reason": "multi_sort",
                "message": "ignored",
                "field": "title",
                "operator": None,
            }],
        }


class TestCompileContext:
    """Test per-call compile state."""

    def test_placeholders_are_sequential(self):
        """Test placeholder names count up from p0."""
        ctx = CompileContext("groq")
        assert ctx.add_param("a") == "p0"
        assert ctx.add_param("b") == "p1"
        assert ctx.params == {"p0": "a", "p1": "b"}

    def test_degrade_logs_warning(self, caplog):
        """Test each notice is logged at WARNING."""
        caplog.set_level("WARNING", logger="contentbridge")
        ctx = CompileContext("contentful")
        ctx.degrade(DegradeReason.COMPLEX_NOT, "dropped", field="a", operator="not")
        assert ctx.notices[0].field == "a"
        assert "complex_not: dropped" in caplog.text


class TestCompilerFactory:
    """Test the compiler registry."""

    def test_registry(self):
        """Test every target is registered."""
        assert COMPILERS == {
            "groq": GROQQueryCompiler,
            "contentful": ContentfulQueryCompiler,
            "qdrant": QdrantQueryCompiler,
        }

    def test_create_compiler(self):
        """Test configuration is passed to the constructor."""
        compiler = create_compiler("Contentful", default_locale="de", include_all_locales=True)
        assert isinstance(compiler, ContentfulQueryCompiler)
        assert compiler.default_locale == "de"
        assert compiler.include_all_locales

    def test_unknown_target(self):
        """Test unknown targets raise."""
        with pytest.raises(ValidationError, match="Unknown query target"):
            create_compiler("mongodb")

    def test_invalid_constructor_values(self):
        """Test constructor values are validated."""
        with pytest.raises(ValidationError):
            GROQQueryCompiler(max_resolve_depth=-1)
        with pytest.raises(ValidationError):
            GROQQueryCompiler(max_depth=0)

    def test_raw_global_filter(self):
        """Test only string targets accept raw global filters."""
        GROQQueryCompiler(global_filter='site == "main"')
        with pytest.raises(ValidationError, match="raw string"):
            ContentfulQueryCompiler(global_filter="fields.site=main")
