"""
Projection model.

A projection maps field names to ``True`` (include), ``False`` (exclude), a
nested mapping, an alias path string, a computed-function descriptor
``{"fn": name, "args": [...]}`` or an expansion descriptor
``{"expand": True, "projection": {...}}``. ``normalize_projection`` turns that
mapping into tagged variants once, so each target renders by ``kind``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .base import CompileContext, DegradeReason, FilterDepthError


class ProjectionKind(Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"
    NESTED = "nested"
    ALIAS = "alias"
    COMPUTED = "computed"
    EXPAND = "expand"


@dataclass(frozen=True)
class Include:
    name: str
    kind: ClassVar[ProjectionKind] = ProjectionKind.INCLUDE


@dataclass(frozen=True)
class Exclude:
    name: str
    kind: ClassVar[ProjectionKind] = ProjectionKind.EXCLUDE


@dataclass(frozen=True)
class Nested:
    name: str
    fields: Tuple[Any, ...]
    kind: ClassVar[ProjectionKind] = ProjectionKind.NESTED


@dataclass(frozen=True)
class Alias:
    name: str
    path: str
    kind: ClassVar[ProjectionKind] = ProjectionKind.ALIAS


@dataclass(frozen=True)
class Computed:
    name: str
    fn: str
    args: Tuple[Any, ...] = ()
    kind: ClassVar[ProjectionKind] = ProjectionKind.COMPUTED


@dataclass(frozen=True)
class Expand:
    """Reference field to resolve; ``fields`` is None when no sub-projection is given."""
    name: str
    fields: Optional[Tuple[Any, ...]] = None
    kind: ClassVar[ProjectionKind] = ProjectionKind.EXPAND


_FN_KEYS = ("fn", "_fn")
_EXPAND_KEYS = ("expand", "_expand")


def _first_key(value: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        if key in value:
            return key
    return None


def normalize_projection(projection: Optional[Dict[str, Any]],
                         ctx: CompileContext,
                         depth: int = 1,
                         path: str = "projection") -> List[Any]:
    """
    Normalise a projection mapping into tagged variants.

    Values with no recognised shape are dropped with an ``invalid_projection``
    notice.

    Raises:
        FilterDepthError: When nesting exceeds the context's ``max_depth``
    """
    if not projection:
        return []
    if depth > ctx.max_depth:
        raise FilterDepthError(
            f"Projection nesting exceeds maximum depth of {ctx.max_depth}", path=path
        )

    fields: List[Any] = []
    for name, value in projection.items():
        if not isinstance(name, str) or not name:
            ctx.degrade(DegradeReason.INVALID_PROJECTION, f"Invalid projection key {name!r}")
            continue

        if isinstance(value, (Include, Exclude, Nested, Alias, Computed, Expand)):
            fields.append(value)
        elif value is True:
            fields.append(Include(name))
        elif value is False:
            fields.append(Exclude(name))
        elif isinstance(value, str):
            fields.append(Alias(name, value))
        elif isinstance(value, dict):
            fields.append(_normalize_mapping(name, value, ctx, depth, f"{path}.{name}"))
        else:
            ctx.degrade(
                DegradeReason.INVALID_PROJECTION,
                f"Unrecognised projection value for '{name}': {value!r}",
                field=name,
            )
    return fields


def _normalize_mapping(name: str, value: Dict[str, Any], ctx: CompileContext,
                       depth: int, path: str) -> Any:
    fn_key = _first_key(value, _FN_KEYS)
    if fn_key is not None:
        args = value.get("args") or ()
        if not isinstance(args, (list, tuple)):
            args = (args,)
        return Computed(name, str(value[fn_key]), tuple(args))

    expand_key = _first_key(value, _EXPAND_KEYS)
    if expand_key is not None:
        if not value[expand_key]:
            return Include(name)
        sub = value.get("projection")
        if not sub:
            return Expand(name)
        return Expand(name, tuple(normalize_projection(sub, ctx, depth + 1, path)))

    if not value:
        return Include(name)
    return Nested(name, tuple(normalize_projection(value, ctx, depth + 1, path)))


def expansion_depth(fields: List[Any]) -> int:
    """Deepest chain of nested Expand descriptors."""
    deepest = 0
    for item in fields:
        if item.kind is ProjectionKind.EXPAND:
            deepest = max(deepest, 1 + expansion_depth(list(item.fields or ())))
        elif item.kind is ProjectionKind.NESTED:
            deepest = max(deepest, expansion_depth(list(item.fields)))
    return deepest
