"""
Category keyword taxonomy.

Static, versioned configuration mapping a category name to primary keywords
(strong signal) and aliases (weak signal). The taxonomy is an immutable value
handed to the CategorizationEngine at construction; the shipped default is
read once from data/category_keywords.json.
"""

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

DEFAULT_TAXONOMY_PATH = Path(__file__).parent / "data" / "category_keywords.json"

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, replace non-alphanumerics with spaces, collapse whitespace."""
    if not text:
        return ""
    text = _NON_ALNUM.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(frozen=True)
class CategoryKeywordEntry:
    name: str
    keywords: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    keyword_weight: int = 10
    alias_weight: int = 3

    def __post_init__(self):
        # Terms are matched against normalized descriptions, so normalize them the same way
        object.__setattr__(self, "keywords", tuple(t for t in (normalize_text(k) for k in self.keywords) if t))
        object.__setattr__(self, "aliases", tuple(t for t in (normalize_text(a) for a in self.aliases) if t))


@dataclass(frozen=True)
class CategoryTaxonomy:
    entries: Tuple[CategoryKeywordEntry, ...] = field(default_factory=tuple)
    version: str = "unversioned"

    @classmethod
    def from_entries(cls, entries: Iterable[CategoryKeywordEntry], version: str = "unversioned") -> "CategoryTaxonomy":
        return cls(entries=tuple(entries), version=version)

    @classmethod
    def from_dict(cls, data: dict) -> "CategoryTaxonomy":
        entries = []
        for item in data.get("categories", []):
            entries.append(CategoryKeywordEntry(
                name=item["name"],
                keywords=tuple(item.get("keywords", ())),
                aliases=tuple(item.get("aliases", ())),
                keyword_weight=item.get("keyword_weight", 10),
                alias_weight=item.get("alias_weight", 3),
            ))
        return cls(entries=tuple(entries), version=str(data.get("version", "unversioned")))

    def __len__(self) -> int:
        return len(self.entries)


def load_taxonomy(path: Union[str, Path]) -> CategoryTaxonomy:
    with open(path, "r", encoding="utf-8") as f:
        return CategoryTaxonomy.from_dict(json.load(f))


@lru_cache()
def get_default_taxonomy() -> CategoryTaxonomy:
    return load_taxonomy(DEFAULT_TAXONOMY_PATH)
