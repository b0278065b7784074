"""
Typed filter expressions for vector store queries
Filters become (field, operator, value) clauses that the store translates
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Tuple

from .models import ListFilters


class FilterOperator(str, Enum):
    EQ = "eq"        # exact match
    IN = "in"        # value is one of a set
    ANY = "any"      # multi-valued field shares at least one value
    RANGE = "range"  # inclusive (start, end)


@dataclass(frozen=True)
class FilterClause:
    field: str
    operator: FilterOperator
    value: Any


def build_filter_clauses(filters: ListFilters) -> List[FilterClause]:
    """
    Convert search/list filters into clauses.

    Args:
        filters: User, companion, content type, tags and date range filters

    Returns:
        Clauses in a stable order; empty when nothing restricts the query
    """
    clauses: List[FilterClause] = []

    if filters.user_id:
        clauses.append(FilterClause("user_id", FilterOperator.EQ, filters.user_id))

    if filters.companion_id:
        clauses.append(FilterClause("companion_id", FilterOperator.EQ, filters.companion_id))

    if filters.content_type:
        if isinstance(filters.content_type, list):
            values = tuple(ct.value for ct in filters.content_type)
            clauses.append(FilterClause("content_type", FilterOperator.IN, values))
        else:
            clauses.append(FilterClause("content_type", FilterOperator.EQ, filters.content_type.value))

    if filters.tags:
        clauses.append(FilterClause("tags", FilterOperator.ANY, tuple(filters.tags)))

    if filters.date_range:
        bounds: Tuple[datetime, datetime] = (filters.date_range.start, filters.date_range.end)
        clauses.append(FilterClause("created_at", FilterOperator.RANGE, bounds))

    return clauses
