"""
Canonical semantics for deflux.

This module is intentionally small and declarative:
  - Canonical assay types
  - Canonical column names of the harmonized schema
  - Canonical statistic names of the result table

Implementation details live elsewhere (harmonizer, normalizer, pipeline).
"""

ASSAY_TYPES_CANONICAL = ("intensity", "counts")
FEATURE_LEVELS_CANONICAL = ("peptide", "protein")

# Harmonized schema
COL_PEPTIDE_ID = "PEPTIDE_ID"
COL_PROTEIN_ID = "PROTEIN_ID"
COL_MZ = "MASS_TO_CHARGE"
COL_CHARGE = "CHARGE"
COL_SAMPLE = "SAMPLE"
COL_SIGNAL = "SIGNAL"
COL_ORGANISM = "ORGANISM"
COL_N_PEPTIDES = "N_PEPTIDES"
COL_FEATURE_ID = "FEATURE_ID"

FEATURE_COLUMNS = (COL_PEPTIDE_ID, COL_PROTEIN_ID, COL_MZ, COL_CHARGE)

# Sentinels resolved to null by the harmonizer
MISSING_SENTINELS = ("0", "0.0", "NA", "NaN", "nan", "N/A", "", "Filtered", "NaN;NaN")

# Organism labels outside the closed tag set
ORGANISM_AMBIGUOUS = "ambiguous"
ORGANISM_UNKNOWN = "unknown"

# Design
MISSING_LEVEL = "missing"
INTERCEPT = "Intercept"

# Result table statistics, in block order
STAT_LOG2FC = "log2FC"
STAT_SE = "SE"
STAT_CI_LOW = "CI_LOW"
STAT_CI_HIGH = "CI_HIGH"
STAT_T = "T"
STAT_PVALUE = "PVALUE"
STAT_QVALUE = "QVALUE"
STAT_PVALUE_RAW = "PVALUE_RAW"
STAT_QVALUE_RAW = "QVALUE_RAW"

ABUNDANCE_PREFIX = "log2_"
MISSINGNESS_PREFIX = "Missingness_"
