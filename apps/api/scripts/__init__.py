"""Operational scripts (SLO checks, OpenAPI export)."""

from . import check_slo as check_slo  # re-export module

__all__ = [
    "check_slo",
]
