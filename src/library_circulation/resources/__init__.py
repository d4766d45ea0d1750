"""Library Circulation MCP Resources

Resources are the read-only side of the MCP surface; tools change state.
Each builder returns resource definitions (URI or URI template, name,
description, MIME type and handler) bound to one circulation service.
"""

from typing import Any

from ..service import CirculationService
from .loans import build_loan_resources
from .stats import build_stats_resources


def build_all_resources(service: CirculationService) -> list[dict[str, Any]]:
    return build_loan_resources(service) + build_stats_resources(service)


__all__ = [
    "build_all_resources",
    "build_loan_resources",
    "build_stats_resources",
]
