from deploygate.selectors.matcher import matches, validate_selector
from deploygate.selectors.types import (
    COLUMN_OPERATORS,
    DATE_OPERATORS,
    PROPERTY_CONDITION_TYPES,
    Selector,
)

__all__ = [
    "COLUMN_OPERATORS",
    "DATE_OPERATORS",
    "PROPERTY_CONDITION_TYPES",
    "Selector",
    "matches",
    "validate_selector",
]
