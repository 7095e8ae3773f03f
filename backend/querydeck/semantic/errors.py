"""
Query Error Classification
==========================

Error classification and user messaging for analytics queries.

WHY THIS FILE EXISTS
--------------------
A query can be rejected at two stages:

    1. Schema Validation Errors (Pydantic, before this module is involved)
       - Missing required fields
       - Wrong data types
       - Empty segment groups, empty `in` lists

    2. Semantic Validation Errors (querydeck/semantic/validator.py)
       - Unknown metric or dimension keys
       - Operator not legal for the segment field's type
       - Sort key that is not part of the query
       - Unparseable dates, inverted date ranges

Both must reach the caller as a structured, actionable error rather than a
500. Coercion gaps (a missing property, a non-numeric revenue value) are NOT
errors: they resolve to "(none)" or 0 inside the catalog.

This file provides:
- ErrorCategory / ErrorCode: machine-readable classification
- QueryError: the exception raised by validation
- suggest_key(): "did you mean" lookup for unknown keys

RELATED FILES
-------------
- querydeck/semantic/validator.py: raises QueryError
- querydeck/main.py: maps QueryError to a 400 response
"""

import difflib
import logging
from dataclasses import dataclass, field as dataclass_field
from enum import Enum
from typing import Any, Dict, Iterable, Optional


# =============================================================================
# LOGGING SETUP
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CLASSIFICATION ENUMS
# =============================================================================

class ErrorCategory(Enum):
    """
    Categories of errors for classification and handling.

    WHAT: Groups error codes by the layer that detects them.

    WHY: Schema and semantic errors are the caller's fault (HTTP 400);
         resource errors are ours (HTTP 500) and must never be cached.
    """
    SCHEMA = "schema"              # JSON structure, types, format
    SEMANTIC = "semantic"          # Catalog keys, operator typing, ranges
    RESOURCE = "resource"          # Database, rate limits
    UNKNOWN = "unknown"            # Unexpected errors


class ErrorCode(Enum):
    """Machine-readable codes for monitoring and client handling."""
    # Schema errors
    MISSING_REQUIRED_FIELD = "ERR_001"
    INVALID_FIELD_TYPE = "ERR_002"

    # Catalog errors
    UNKNOWN_METRIC = "ERR_010"
    UNKNOWN_DIMENSION = "ERR_011"
    UNKNOWN_OPERATOR = "ERR_012"
    UNKNOWN_SEGMENT_FIELD = "ERR_013"
    DUPLICATE_KEY = "ERR_014"

    # Semantic errors
    OPERATOR_TYPE_MISMATCH = "ERR_020"
    INVALID_SEGMENT_VALUE = "ERR_021"
    INVALID_SORT_KEY = "ERR_022"
    INVALID_DATE = "ERR_023"
    INVALID_DATE_RANGE = "ERR_024"

    # Resource errors
    DATABASE_ERROR = "ERR_031"
    RATE_LIMIT_EXCEEDED = "ERR_032"

    # Unknown errors
    INTERNAL_ERROR = "ERR_999"


# =============================================================================
# QUERY ERROR EXCEPTION
# =============================================================================

@dataclass
class QueryError(Exception):
    """
    Exception raised when a query cannot be executed as written.

    ATTRIBUTES:
        code: ErrorCode (machine-readable)
        message: Human readable description of the problem
        category: ErrorCategory for classification
        field_name: Which part of the query caused the error (optional)
        suggestion: How to fix the error (optional)
        details: Additional debug information (e.g. all collected errors)

    USAGE:
        raise QueryError(
            code=ErrorCode.UNKNOWN_METRIC,
            message="Unknown metric 'revenu'",
            category=ErrorCategory.SEMANTIC,
            field_name="metrics",
            suggestion="Did you mean 'revenue'?",
        )
    """
    code: ErrorCode
    message: str
    category: ErrorCategory = ErrorCategory.SEMANTIC
    field_name: Optional[str] = None
    suggestion: Optional[str] = None
    details: Dict[str, Any] = dataclass_field(default_factory=dict)

    def __str__(self) -> str:
        if self.field_name:
            return f"[{self.code.value}] {self.field_name}: {self.message}"
        return f"[{self.code.value}] {self.message}"

    def user_message(self) -> str:
        """Message plus suggestion, suitable for showing to an end user."""
        message = self.message
        if self.suggestion:
            message = f"{message}. {self.suggestion}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for logging/JSON serialization.

        RETURNS:
            Dictionary with code, message, category and the optional
            field / suggestion / details entries when present.
        """
        result: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "category": self.category.value,
        }

        if self.field_name:
            result["field"] = self.field_name

        if self.suggestion:
            result["suggestion"] = self.suggestion

        if self.details:
            result["details"] = self.details

        return result


# =============================================================================
# SUGGESTIONS
# =============================================================================

def suggest_key(value: str, candidates: Iterable[str]) -> Optional[str]:
    """
    Build a "did you mean" hint for an unknown key.

    Falls back to listing the valid options when nothing is close.

    EXAMPLES:
        >>> suggest_key("revenu", ["events", "users", "revenue"])
        "Did you mean 'revenue'?"
    """
    options = sorted(candidates)
    if not options:
        return None
    matches = difflib.get_close_matches(value, options, n=1, cutoff=0.6)
    if matches:
        return f"Did you mean '{matches[0]}'?"
    return f"Valid options are: {', '.join(options)}"
