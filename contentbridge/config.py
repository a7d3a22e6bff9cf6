"""
Configuration helpers for ContentBridge query compilers.
Supports environment variables for easy deployment configuration.
"""

import os
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError


_TRUTHY = ('1', 'true', 'yes', 'on')
_FALSY = ('0', 'false', 'no', 'off')


class Config:
    """
    Configuration helper that reads from environment variables.

    Environment variables:
        CONTENTBRIDGE_DEFAULT_LOCALE: Locale used when a query sets none
        CONTENTBRIDGE_FALLBACK_LOCALES: Comma separated fallback locales
        CONTENTBRIDGE_DEFAULT_LIMIT: Result count used when a query sets no limit
        CONTENTBRIDGE_MAX_RESOLVE_DEPTH: Upper bound for reference resolution depth
        CONTENTBRIDGE_MAX_FILTER_DEPTH: Maximum filter/projection nesting depth
        CONTENTBRIDGE_INCLUDE_DRAFTS: Include draft documents by default
        CONTENTBRIDGE_STRICT: Raise instead of returning degraded queries
    """

    @staticmethod
    def from_env() -> Dict[str, Any]:
        """
        Create compiler configuration from environment variables.

        Returns:
            Dict of keyword arguments for any query compiler constructor

        Example:
            from contentbridge import GROQQueryCompiler
            from contentbridge.config import Config

            compiler = GROQQueryCompiler(**Config.from_env())
        """
        config: Dict[str, Any] = {}

        default_locale = os.getenv("CONTENTBRIDGE_DEFAULT_LOCALE")
        if default_locale:
            config["default_locale"] = default_locale

        fallback_locales = _parse_list(os.getenv("CONTENTBRIDGE_FALLBACK_LOCALES"))
        if fallback_locales:
            config["fallback_locales"] = fallback_locales

        default_limit = _parse_int("CONTENTBRIDGE_DEFAULT_LIMIT")
        if default_limit is not None:
            config["default_limit"] = default_limit

        max_resolve_depth = _parse_int("CONTENTBRIDGE_MAX_RESOLVE_DEPTH")
        if max_resolve_depth is not None:
            config["max_resolve_depth"] = max_resolve_depth

        max_depth = _parse_int("CONTENTBRIDGE_MAX_FILTER_DEPTH")
        if max_depth is not None:
            config["max_depth"] = max_depth

        include_drafts = _parse_bool("CONTENTBRIDGE_INCLUDE_DRAFTS")
        if include_drafts is not None:
            config["include_drafts"] = include_drafts

        strict = _parse_bool("CONTENTBRIDGE_STRICT")
        if strict is not None:
            config["strict"] = strict

        return config

    @staticmethod
    def for_preview(default_locale: Optional[str] = None) -> Dict[str, Any]:
        """
        Configuration for preview environments (drafts visible).

        Args:
            default_locale: Optional default locale

        Returns:
            Configuration dict for preview setup
        """
        config: Dict[str, Any] = {"include_drafts": True}
        if default_locale:
            config["default_locale"] = default_locale
        return config

    @staticmethod
    def for_strict(max_resolve_depth: int = 10) -> Dict[str, Any]:
        """
        Configuration that refuses to return any degraded query.

        Args:
            max_resolve_depth: Upper bound for reference resolution

        Returns:
            Configuration dict for strict compilation
        """
        return {
            "strict": True,
            "include_drafts": False,
            "max_resolve_depth": max_resolve_depth,
        }


def _parse_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(',') if item.strip()]


def _parse_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return None
    try:
        value = int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ValidationError(f"{name} must not be negative, got {value}")
    return value


def _parse_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return None
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValidationError(f"{name} must be a boolean flag, got {raw!r}")
