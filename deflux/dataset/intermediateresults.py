from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import pandas as pd


@dataclass
class IntermediateResults:
    # Matrices at the various preprocessing stages, all features x samples
    matrices: Dict[str, pd.DataFrame] = field(default_factory=dict)

    # Per-sample vectors (library sizes, scale factors)
    vectors: Dict[str, pd.Series] = field(default_factory=dict)

    # Metadata for filtering and normalization steps
    metadata: Dict[str, Any] = field(default_factory=lambda: {
        "filtering": {},
        "normalization": {}})

    # Sample columns shared by every stored matrix
    columns: Optional[list] = None

    def add_matrix(self, name: str, matrix: pd.DataFrame):
        """Add a matrix, checking it holds the same samples as the ones stored before."""
        if self.columns is None:
            self.columns = list(matrix.columns)
        elif list(matrix.columns) != self.columns:
            raise ValueError(f"Matrix '{name}' has inconsistent sample columns.")
        self.matrices[name] = matrix

    def add_vector(self, name: str, vector: pd.Series):
        if self.columns is not None and list(vector.index) != self.columns:
            raise ValueError(f"Vector '{name}' is not indexed by the stored samples.")
        self.vectors[name] = vector

    def add_metadata(self, step: str, key: str, value: Any):
        """Store metadata like thresholds, counts of removed features, etc."""
        if step not in self.metadata:
            raise ValueError("step must be 'filtering' or 'normalization'")
        self.metadata[step][key] = value
