from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..config import NamingConfig

_FIRST_CAP = re.compile(r"(.)([A-Z][a-z]+)")
_ALL_CAP = re.compile(r"([a-z0-9])([A-Z])")

_UNCOUNTABLE = {
    "equipment", "information", "rice", "money", "species", "series",
    "fish", "sheep", "news", "data", "metadata",
}
_IRREGULAR = {
    "person": "people",
    "man": "men",
    "woman": "women",
    "child": "children",
    "mouse": "mice",
    "goose": "geese",
    "tooth": "teeth",
    "foot": "feet",
}


def snake_case(name: str) -> str:
    """Convert CamelCase to snake_case (``MemberNumber`` -> ``member_number``)."""
    s1 = _FIRST_CAP.sub(r"\1_\2", name)
    return _ALL_CAP.sub(r"\1_\2", s1).lower()


def pluralize(word: str) -> str:
    """English plural of the last ``_`` separated word."""
    head, sep, last = word.rpartition("_")
    if last in _UNCOUNTABLE or not last:
        return word
    if last in _IRREGULAR:
        plural = _IRREGULAR[last]
    elif re.search(r"(s|x|z|ch|sh)$", last):
        plural = last + "es"
    elif re.search(r"[^aeiou]y$", last):
        plural = last[:-1] + "ies"
    elif re.search(r"(?:[^f]fe|[lr]f)$", last):
        plural = re.sub(r"fe?$", "ves", last)
    else:
        plural = last + "s"
    return f"{head}{sep}{plural}"


@dataclass(frozen=True)
class NamingStrategy:
    table_prefix: str = ""
    singular_table: bool = False
    table_names: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, cfg: NamingConfig) -> "NamingStrategy":
        return cls(
            table_prefix=cfg.table_prefix,
            singular_table=cfg.singular_table,
            table_names=tuple(sorted(cfg.table_names.items())),
        )

    def table_name(self, shape_name: str) -> str:
        # 显式映射优先，且不再叠加前缀
        for key, value in self.table_names:
            if key == shape_name:
                return value
        base = snake_case(shape_name)
        if not self.singular_table:
            base = pluralize(base)
        return self.table_prefix + base

    def column_name(self, field_name: str) -> str:
        return snake_case(field_name)
