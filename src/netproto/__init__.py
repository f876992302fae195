"""
netproto
========

Parser, typed layer model and graph rewrites for nested network
descriptions (``name: value`` / ``name { ... }`` text).
"""

from importlib.metadata import PackageNotFoundError, version


def get_version() -> str:
    """Return the installed package version or '0.0.0' when unavailable."""
    try:
        return version("netproto")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
