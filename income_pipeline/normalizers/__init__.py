"""
Data normalization utilities.

These modules fill missing values and map known text variants of the raw
household income records onto one canonical, upper-cased form.
"""

from .lookups import LookupTables, default_lookups, load_lookups
from .rules import (
    NormalizationStats,
    Normalizer,
    PlaceLookupRule,
    Rule,
    SubstitutionRule,
    UpperCaseRule,
    default_rules,
)

__all__ = [
    'Normalizer',
    'NormalizationStats',
    'Rule',
    'PlaceLookupRule',
    'SubstitutionRule',
    'UpperCaseRule',
    'default_rules',
    'LookupTables',
    'default_lookups',
    'load_lookups',
]
