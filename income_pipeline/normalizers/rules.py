"""
Declarative normalization rules.

Each rule is a condition and a replacement over one or more fields. Rules are
total: a record the rule does not match passes through unchanged. A rule that
cannot evaluate a record raises ``RuleApplicationError``; the ``Normalizer``
then skips that rule for that record and moves on.

Default order (later rules see the output of earlier ones):

1. fill_place        Place is NULL and (County, City) is a known pair
2. canonical_type    exact-match Type variants
3. canonical_state   exact-match State_Name variants
4. uppercase         County, City, Place, State_Name, Type
"""

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from income_pipeline.config import UPPERCASE_FIELDS
from income_pipeline.errors import RuleApplicationError
from income_pipeline.normalizers.lookups import LookupTables, default_lookups


def _get(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _set(record: Any, name: str, value: Any) -> None:
    if isinstance(record, dict):
        record[name] = value
    else:
        setattr(record, name, value)


class Rule(ABC):
    """A single field-level cleaning rule."""

    name: str = "rule"

    @abstractmethod
    def apply(self, record: Any) -> bool:
        """Apply the rule in place.

        Returns:
            True if the record was changed

        Raises:
            RuleApplicationError: If the rule cannot evaluate this record
        """

    def _fail(self, record: Any, message: str) -> RuleApplicationError:
        return RuleApplicationError(self.name, message, row_id=_get(record, "row_id"))


class PlaceLookupRule(Rule):
    """Fill a missing Place from a (County, City) lookup."""

    def __init__(self, lookup: Mapping[tuple[Any, Any], Any], name: str = "fill_place"):
        self.lookup = lookup
        self.name = name

    def apply(self, record: Any) -> bool:
        if _get(record, "Place") is not None:
            return False

        key = (_get(record, "County"), _get(record, "City"))
        try:
            if key not in self.lookup:
                return False
        except TypeError as e:
            raise self._fail(record, f"unusable lookup key {key!r}: {e}") from e

        value = self.lookup[key]
        if not isinstance(value, str) or not value:
            raise self._fail(record, f"lookup value for {key!r} is not text: {value!r}")

        _set(record, "Place", value)
        return True


class SubstitutionRule(Rule):
    """Replace exact-match variants of one field with their canonical form."""

    def __init__(self, field_name: str, table: Mapping[Any, Any], name: str | None = None):
        self.field_name = field_name
        self.table = table
        self.name = name or f"canonical_{field_name.lower()}"

    def apply(self, record: Any) -> bool:
        value = _get(record, self.field_name)
        if value is None:
            return False

        try:
            if value not in self.table:
                return False
        except TypeError as e:
            raise self._fail(record, f"unusable {self.field_name} value {value!r}: {e}") from e

        replacement = self.table[value]
        if not isinstance(replacement, str) or not replacement:
            raise self._fail(record, f"replacement for {value!r} is not text: {replacement!r}")

        _set(record, self.field_name, replacement)
        return replacement != value


class UpperCaseRule(Rule):
    """Upper-case text fields so joins and grouping are case insensitive."""

    def __init__(self, fields: Sequence[str] = tuple(UPPERCASE_FIELDS), name: str = "uppercase"):
        self.fields = list(fields)
        self.name = name

    def apply(self, record: Any) -> bool:
        values = {name: _get(record, name) for name in self.fields}
        for name, value in values.items():
            if value is not None and not isinstance(value, str):
                raise self._fail(record, f"{name} is not text: {value!r}")

        changed = False
        for name, value in values.items():
            if value is None:
                continue
            upper = value.upper()
            if upper != value:
                _set(record, name, upper)
                changed = True
        return changed


def default_rules(tables: LookupTables | None = None) -> list[Rule]:
    """Build the standard rule list in its documented order."""
    tables = tables or default_lookups()
    return [
        PlaceLookupRule(tables.place_lookup),
        SubstitutionRule("Type", tables.type_variants, name="canonical_type"),
        SubstitutionRule("State_Name", tables.state_name_variants, name="canonical_state"),
        UpperCaseRule(),
    ]


@dataclass
class NormalizationStats:
    """Per-rule counts for one normalization pass."""
    records: int = 0
    changed: Counter = field(default_factory=Counter)
    skipped: Counter = field(default_factory=Counter)

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


class Normalizer:
    """Apply an ordered list of rules to every record."""

    def __init__(self, rules: Iterable[Rule] | None = None):
        self.rules = list(rules) if rules is not None else default_rules()

    def normalize(self, records: Iterable[Any]) -> NormalizationStats:
        """Normalize records in place.

        Never adds or removes records. Rule failures are logged and counted.
        """
        stats = NormalizationStats()
        for record in records:
            stats.records += 1
            for rule in self.rules:
                try:
                    if rule.apply(record):
                        stats.changed[rule.name] += 1
                except RuleApplicationError as e:
                    stats.skipped[rule.name] += 1
                    logger.warning(f"Skipped rule for record: {e}")

        logger.debug(
            f"Normalized {stats.records} records: changed={dict(stats.changed)} skipped={dict(stats.skipped)}"
        )
        return stats
