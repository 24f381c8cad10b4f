"""
Versioned rule table describing how the exporter mangles file names.

The exporter's truncation length and marker tokens are empirical and change
between client versions. They live here, apart from the matcher's precedence
logic, so a new mangling pattern is a new table entry.
"""
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

# Localized suffixes Google Photos appends to edited copies ("IMG_1-edited.jpg")
EDITED_TOKENS = (
    'edited',
    'bearbeitet',
    'modifié',
    'modificato',
    'editado',
    'bewerkt',
    'edytowane',
    'redigeret',
    'redigerad',
    'muokattu',
    'upraveno',
    'szerkesztett',
)


@dataclass(frozen=True)
class NamingRules:
    version: str
    # Longest sidecar title (media name without ".json") the exporter emits
    truncation_length: int
    # Characters a duplicate counter or a leftover marker can take from the title budget
    truncation_tolerance: int = 4
    supplemental_marker: str = 'supplemental-metadata'
    # Shortest truncated form of the supplemental marker still recognized (".s")
    min_marker_prefix: int = 1
    edited_tokens: Tuple[str, ...] = EDITED_TOKENS

    @property
    def min_prefix_length(self) -> int:
        """Shortest sidecar title accepted as a truncated prefix of a media title."""
        return max(1, self.truncation_length - self.truncation_tolerance)

    def marker_variants(self) -> List[str]:
        """Every truncated form of the supplemental marker, longest first."""
        marker = self.supplemental_marker
        return [marker[:i] for i in range(len(marker), self.min_marker_prefix - 1, -1)]


RULESETS = {
    # Exports since late 2023: "<name>.supplemental-metadata.json", 51-char JSON names
    '2024.1': NamingRules(version='2024.1', truncation_length=47),
    # Older exports: "<name>.json", titles cut at 46 characters
    'legacy': NamingRules(version='legacy', truncation_length=46),
}

DEFAULT_RULES_VERSION = '2024.1'
DEFAULT_RULES = RULESETS[DEFAULT_RULES_VERSION]


def get_rules(version: str = DEFAULT_RULES_VERSION,
              truncation_length: Optional[int] = None) -> NamingRules:
    """Returns the named ruleset, optionally with the truncation length overridden."""
    try:
        rules = RULESETS[version]
    except KeyError:
        known = ", ".join(sorted(RULESETS))
        raise ValueError(f"Unknown naming rules version '{version}' (known: {known})") from None

    if truncation_length is not None:
        if truncation_length < 1:
            raise ValueError("truncation_length must be positive")
        rules = replace(rules, truncation_length=truncation_length)
    return rules
