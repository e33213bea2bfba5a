from dataclasses import dataclass, field
from typing import Dict, Optional

import pandas as pd


@dataclass
class PreprocessResults:
    normalized: pd.DataFrame                    # features x samples, log scale
    raw: pd.DataFrame                           # input matrix, before any transform
    assay_type: str
    weights: Optional[pd.DataFrame] = None      # precision weights (counts only)
    lib_size: Optional[pd.Series] = None        # counts only
    norm_factors: Optional[pd.Series] = None    # counts only
    meta_filter: Dict = field(default_factory=dict)
    meta_normalization: Dict = field(default_factory=dict)
