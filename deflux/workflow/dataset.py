from copy import deepcopy
from pathlib import Path
from typing import Optional, Union

import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from deflux.design.designmatrixbuilder import DesignMatrix, DesignMatrixBuilder
from deflux.design.specification import ContrastSpecification, align_metadata
from deflux.utils.analysis_type import normalize_assay_type, normalize_feature_level
from deflux.utils.errors import SchemaMismatchError
from deflux.utils.harmonizer import DataHarmonizer, split_wide
from deflux.utils.semantics import COL_PEPTIDE_ID, COL_PROTEIN_ID
from deflux.utils.utils import log_info, log_time, log_warning
from deflux.workflow.preprocessing import Preprocessor
from deflux.workflow.rollup import rollup_to_protein


class Dataset:
    """Loads one study, harmonizes it and builds its final abundance matrix."""
    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements of one study
        """
        self.name = kwargs.get("name", "study")

        # Dataset-specific config
        dataset_cfg = kwargs.get("dataset", {}) or {}
        self.file_path = dataset_cfg.get("input_file", None)
        self.load_method = dataset_cfg.get("load_method", "polars")
        self.metadata_file = dataset_cfg.get("metadata_file", None)
        self.metadata_inline = dataset_cfg.get("metadata", None)
        self.sample_column = dataset_cfg.get("sample_column_metadata", "Sample")
        self.annotation_file = dataset_cfg.get("annotation_file", None)
        self.annotation_key = dataset_cfg.get("annotation_key", COL_PROTEIN_ID)

        preprocessing_cfg = deepcopy(kwargs.get("preprocessing", {}) or {})
        self.assay_type = normalize_assay_type(preprocessing_cfg.get("assay_type"))
        preprocessing_cfg["assay_type"] = self.assay_type

        default_level = "protein" if self.assay_type == "intensity" else "peptide"
        self.feature_level = normalize_feature_level(dataset_cfg.get("feature_level"), default=default_level)
        self.rollup_method = (preprocessing_cfg.get("rollup") or {}).get("method", "median_polish")

        self.spec = ContrastSpecification.from_config(kwargs.get("design") or {}, kwargs.get("contrasts"))

        # Harmonizer setup
        self.harmonizer = DataHarmonizer(dataset_cfg)
        self.preprocessor = Preprocessor(preprocessing_cfg)

        self.matrix: Optional[pd.DataFrame] = None
        self.weights: Optional[pd.DataFrame] = None
        self.annotation: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.design: Optional[DesignMatrix] = None
        self.preprocess_results = None
        self.rollup_result = None

        # Process
        self._load_and_process()

    def _load_and_process(self):
        if not self.file_path:
            raise ValueError(f"[{self.name}] dataset.input_file is required.")
        self.rawinput = self._load_rawdata(self.file_path)
        wide = self.harmonizer.harmonize(self.rawinput)

        matrix, annotation = split_wide(wide, self.harmonizer.resolved_samples)

        self.metadata = align_metadata(self._load_metadata(), list(matrix.columns), self.sample_column)

        if self.assay_type == "counts":
            # voom weights are fitted against the study design
            self.design = DesignMatrixBuilder(self.metadata, self.spec.model).build()

        self._apply_preprocessing(matrix, annotation)
        if self.annotation_file:
            self.annotation = self._join_reference_annotation(self.annotation)

        log_info(f"[{self.name}] {self.matrix.shape[0]} {self.feature_level}(s) x {self.matrix.shape[1]} samples.")

    def _load_rawdata(self, file_path: str) -> pl.DataFrame:
        """Load raw data from a CSV, TSV or XLSX file using different libraries."""
        file_path = str(file_path)
        if file_path.endswith(".xlsx"):
            # spreadsheets go through pandas (openpyxl)
            return pl.from_pandas(pd.read_excel(file_path))
        if not file_path.endswith((".csv", ".tsv")):
            raise ValueError("Only CSV, TSV or XLSX files are supported.")

        delimiter = "\t" if file_path.endswith(".tsv") else ","

        if self.load_method == "polars":
            return pl.read_csv(
                file_path,
                separator=delimiter,
                infer_schema_length=10000,
                null_values=["NA", "NaN", "N/A", ""],
            )
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options)
            return pl.from_arrow(arrow_table)
        elif self.load_method == "pandas":
            df = pd.read_csv(file_path, delimiter=delimiter)
            return pl.from_pandas(df)
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    def _read_table(self, path: Union[str, Path]) -> pd.DataFrame:
        path = str(path)
        if path.endswith(".xlsx"):
            return pd.read_excel(path)
        return pd.read_csv(path, sep="\t" if path.endswith(".tsv") else ",")

    def _load_metadata(self) -> pd.DataFrame:
        if self.metadata_inline is not None:
            return pd.DataFrame(self.metadata_inline)
        if not self.metadata_file:
            raise SchemaMismatchError(
                f"[{self.name}] No sample metadata: set dataset.metadata_file or dataset.metadata."
            )
        return self._read_table(self.metadata_file)

    @log_time("Data Processing")
    def _apply_preprocessing(self, matrix: pd.DataFrame, annotation: pd.DataFrame) -> None:
        design_values = self.design.values if self.design is not None else None
        self.preprocess_results = self.preprocessor.fit_transform(matrix, design_values)

        normalized = self.preprocess_results.normalized
        annotation = annotation.loc[normalized.index]
        self.weights = self.preprocess_results.weights

        if self.feature_level == "protein":
            self.rollup_result = rollup_to_protein(
                normalized,
                annotation[COL_PROTEIN_ID],
                method=self.rollup_method,
                annotation=annotation,
                weights=self.weights,
            )
            self.matrix = self.rollup_result.matrix
            self.annotation = self.rollup_result.annotation
        else:
            self.matrix = normalized
            self.annotation = annotation.copy()
            self.annotation.insert(0, COL_PEPTIDE_ID, annotation.index)
        self.matrix.index.name = None
        self.annotation.index.name = None

    def _join_reference_annotation(self, annotation: pd.DataFrame) -> pd.DataFrame:
        """Left-join display columns from a reference table; rows and their order never change."""
        ref = self._read_table(self.annotation_file)
        key = self.annotation_key
        if key not in ref.columns:
            raise SchemaMismatchError(f"Reference annotation has no key column {key!r}.")
        if key not in annotation.columns:
            raise SchemaMismatchError(f"Feature annotation has no key column {key!r}.")

        ref = ref.copy()
        ref[key] = ref[key].astype(str)
        dup = ref[key].duplicated()
        if dup.any():
            log_warning(f"Reference annotation: {int(dup.sum())} duplicated key(s), first occurrence kept.")
            ref = ref.loc[~dup]

        new_cols = [c for c in ref.columns if c != key and c not in annotation.columns]
        joined = annotation.join(ref.set_index(key)[new_cols], on=key, how="left")
        log_info(f"Reference annotation: {len(new_cols)} column(s) added from {self.annotation_file}")
        return joined
