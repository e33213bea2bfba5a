from __future__ import annotations

import warnings
from typing import Optional

from deflux.utils.semantics import ASSAY_TYPES_CANONICAL, FEATURE_LEVELS_CANONICAL

CANONICAL = set(ASSAY_TYPES_CANONICAL)


def normalize_assay_type(raw: Optional[str]) -> str:
    """
    Normalize assay_type to canonical strings (strict, explicit).

    Canonical:
      - intensity
      - counts

    Accepted aliases:
      - DIA, DDA, LFQ, proteomics, peptidomics -> intensity
      - rnaseq, rna-seq, count -> counts
    """
    if raw is None:
        return "intensity"

    s = str(raw).strip()
    if not s:
        return "intensity"

    key = s.lower()

    alias_map = {
        "intensity": "intensity",
        "dia": "intensity",
        "dda": "intensity",
        "lfq": "intensity",
        "proteomics": "intensity",
        "peptidomics": "intensity",
        "counts": "counts",
        "count": "counts",
        "rnaseq": "counts",
        "rna-seq": "counts",
    }

    if key in alias_map:
        out = alias_map[key]
        if out != key and key not in CANONICAL:
            warnings.warn(
                f"assay_type={s!r} is an alias; use {out!r}.",
                category=DeprecationWarning,
                stacklevel=2,
            )
        return out

    raise ValueError(
        f"Unsupported assay_type={s!r}. "
        "Use one of: 'intensity', 'counts'."
    )


def normalize_feature_level(raw: Optional[str], default: str = "protein") -> str:
    """Return 'peptide' (analyse features as harmonized) or 'protein' (roll peptides up)."""
    key = (str(raw).strip().lower() if raw is not None else "") or default
    key = {"peptides": "peptide", "precursor": "peptide", "proteins": "protein"}.get(key, key)
    if key not in FEATURE_LEVELS_CANONICAL:
        raise ValueError(
            f"Unsupported feature_level={raw!r}. Use one of: {list(FEATURE_LEVELS_CANONICAL)}."
        )
    return key
