from __future__ import annotations

from typing import Any, Dict, Optional

# A selector is a JSON condition tree. ``None`` or ``{}`` matches everything.
#
#   {"type": "comparison", "operator": "and" | "or", "not": false, "conditions": [...]}
#   {"all": [...]} / {"any": [...]}                      shorthand for comparison
#   {"type": "metadata", "key": "region", "operator": "equals", "value": "eu"}
#   {"type": "tag", "operator": "glob", "value": "v2.*"}
#   {"type": "created-at", "operator": "before", "value": "2026-01-01T00:00:00Z"}
Selector = Optional[Dict[str, Any]]

COMPARISON_TYPE = "comparison"
METADATA_TYPE = "metadata"
DATE_TYPE = "created-at"

COMPARISON_OPERATORS = ("and", "or")

COLUMN_OPERATORS = (
    "equals",
    "not-equals",
    "starts-with",
    "ends-with",
    "contains",
    "regex",
    "glob",
)

METADATA_OPERATORS = COLUMN_OPERATORS + ("null",)

DATE_OPERATORS = ("before", "after", "before-or-on", "after-or-on")

# Condition type -> entity attribute it reads.
PROPERTY_CONDITION_TYPES: Dict[str, str] = {
    "id": "id",
    "name": "name",
    "identifier": "identifier",
    "kind": "kind",
    "tag": "tag",
    "version": "tag",
    "status": "status",
}

MAX_DEPTH = 16
