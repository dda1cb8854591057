"""Exceptions raised by the catalog subsystem."""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for catalog failures."""


class UpstreamUnavailable(CatalogError):
    """The upstream anime provider could not be reached or returned garbage."""


class CacheUnavailable(CatalogError):
    """The external key-value cache could not be reached."""


class MalformedQuery(CatalogError, ValueError):
    """A caller supplied an invalid filter, sort or paging parameter."""
