"""Organism-of-origin classification for benchmark (mixed-species) samples."""
from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional, Union

from deflux.utils.errors import AmbiguousAnnotationError
from deflux.utils.semantics import ORGANISM_AMBIGUOUS, ORGANISM_UNKNOWN

# UniProt entry-name suffixes; strain mnemonics (YEAS7, YEAS8, ECOL6, ECO57...) included.
DEFAULT_ORGANISM_PATTERNS: dict[str, str] = {
    "human": r"_HUMAN$",
    "mouse": r"_MOUSE$",
    "yeast": r"_YEAS(T|\d)$",
    "ecoli": r"_ECO(LI|L\d|\d\d)$",
}


def split_identifiers(value: Optional[str]) -> list[str]:
    """Split one semicolon-delimited identifier string; blanks are dropped."""
    if value is None:
        return []
    return [tok.strip() for tok in str(value).split(";") if tok.strip()]


def _compile(patterns: Mapping[str, str]) -> dict[str, re.Pattern]:
    return {tag: re.compile(p, re.IGNORECASE) for tag, p in patterns.items()}


def classify_organism(
    identifiers: Union[str, Iterable[Optional[str]], None],
    patterns: Optional[Mapping[str, str]] = None,
    strict: bool = False,
) -> str:
    """
    Classify a feature by organism from its identifier strings.

    Args:
        identifiers: one semicolon-delimited string, or several of them (one
            per source column). None entries are skipped.
        patterns: organism tag -> regex matched against each identifier.
        strict: raise AmbiguousAnnotationError instead of returning 'ambiguous'.

    Returns:
        The organism tag when every matching identifier agrees on one tag,
        'ambiguous' when they point to more than one, 'unknown' when there is
        nothing to match.
    """
    if identifiers is None or isinstance(identifiers, str):
        identifiers = [identifiers]

    compiled = _compile(patterns or DEFAULT_ORGANISM_PATTERNS)

    tokens = [tok for source in identifiers for tok in split_identifiers(source)]
    if not tokens:
        return ORGANISM_UNKNOWN

    hits: set[str] = set()
    for tok in tokens:
        hits.update(tag for tag, rx in compiled.items() if rx.search(tok))

    if not hits:
        return ORGANISM_UNKNOWN
    if len(hits) == 1:
        return next(iter(hits))

    if strict:
        raise AmbiguousAnnotationError(
            f"Identifiers {tokens} match several organisms: {sorted(hits)}"
        )
    return ORGANISM_AMBIGUOUS
