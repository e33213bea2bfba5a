import polars as pl
import pandas as pd
from typing import Dict, List, Optional, Tuple

from deflux.utils.utils import log_time, log_info, log_warning
from deflux.utils.errors import SchemaMismatchError, fmt_ids
from deflux.utils.organism import classify_organism
from deflux.utils.semantics import (
    COL_CHARGE,
    COL_MZ,
    COL_ORGANISM,
    COL_PEPTIDE_ID,
    COL_PROTEIN_ID,
    COL_SAMPLE,
    COL_SIGNAL,
    FEATURE_COLUMNS,
    MISSING_SENTINELS,
)


class DataHarmonizer:
    """Harmonizes tool exports into one canonical peptide x sample schema."""

    DEFAULT_COLUMN_MAP = {
        "peptide_id_column": COL_PEPTIDE_ID,
        "protein_id_column": COL_PROTEIN_ID,
        "mz_column": COL_MZ,
        "charge_column": COL_CHARGE,
        "sample_column": COL_SAMPLE,
        "signal_column": COL_SIGNAL,
    }

    # Defaults per tool; any key can be overridden in the dataset config.
    TOOL_PRESETS = {
        "generic": {
            "input_layout": "long",
            "peptide_id_column": COL_PEPTIDE_ID,
            "protein_id_column": COL_PROTEIN_ID,
            "mz_column": COL_MZ,
            "charge_column": COL_CHARGE,
            "sample_column": COL_SAMPLE,
            "signal_column": COL_SIGNAL,
        },
        "spectronaut": {
            "input_layout": "long",
            "peptide_id_column": "EG.PrecursorId",
            "protein_id_column": "PG.ProteinGroups",
            "mz_column": "FG.PrecMz",
            "charge_column": "FG.Charge",
            "sample_column": "R.FileName",
            "signal_column": "FG.Quantity",
        },
        "diann": {
            "input_layout": "long",
            "peptide_id_column": "Precursor.Id",
            "protein_id_column": "Protein.Group",
            "mz_column": "Precursor.Mz",
            "charge_column": "Precursor.Charge",
            "sample_column": "Run",
            "signal_column": "Precursor.Quantity",
        },
        "fragpipe": {
            "input_layout": "wide",
            "peptide_id_column": "Peptide Sequence",
            "protein_id_column": "Protein",
            "charge_column": "Charges",
        },
        "maxquant": {
            "input_layout": "wide",
            "peptide_id_column": "Sequence",
            "protein_id_column": "Proteins",
            "charge_column": "Charges",
        },
    }

    AGGREGATES = ("sum", "mean", "median", "max", "min")

    def __init__(self, column_config: dict):
        """Initialize column mappings from the preset and user-defined config."""
        cfg = column_config or {}

        self.tool = (cfg.get("tool") or "generic").strip().lower()
        if self.tool not in self.TOOL_PRESETS:
            raise ValueError(
                f"Unknown tool={self.tool!r}. Use one of: {sorted(self.TOOL_PRESETS)}."
            )
        preset = self.TOOL_PRESETS[self.tool]

        self.input_layout = (cfg.get("input_layout") or preset["input_layout"]).strip().lower()
        if self.input_layout not in {"long", "wide"}:
            raise ValueError("dataset.input_layout must be 'long' or 'wide'.")

        # canonical name -> source column
        self.column_map: Dict[str, str] = {}
        for config_key, std_name in self.DEFAULT_COLUMN_MAP.items():
            original_col = cfg.get(config_key, preset.get(config_key))
            if original_col:
                self.column_map[std_name] = original_col

        raw_samples = cfg.get("samples")
        if raw_samples is None:
            self.sample_map: Optional[Dict[str, str]] = None
        elif isinstance(raw_samples, dict):
            self.sample_map = {str(k): str(v) for k, v in raw_samples.items()}
        else:
            self.sample_map = {str(s): str(s) for s in raw_samples}

        self.missing_values = list(MISSING_SENTINELS) + [str(v) for v in (cfg.get("missing_values") or [])]
        self.annotation_columns: List[str] = list(cfg.get("annotation_columns") or [])
        self.organism_columns: List[str] = list(cfg.get("organism_columns") or [])
        self.organism_patterns = cfg.get("organism_patterns")

        self.resolved_samples: Optional[List[str]] = None
        self.aggregate = (cfg.get("aggregate") or "sum").lower()
        if self.aggregate not in self.AGGREGATES:
            raise ValueError(f"Unsupported aggregate {self.aggregate!r}; use one of {self.AGGREGATES}.")

    @property
    def sample_ids(self) -> Optional[List[str]]:
        """Configured sample IDs in configured order (None if not configured)."""
        if self.sample_map is None:
            return None
        return list(dict.fromkeys(self.sample_map.values()))

    def _require_columns(self, df: pl.DataFrame, canonical: List[str]) -> None:
        unmapped = [c for c in canonical if c not in self.column_map]
        if unmapped:
            raise SchemaMismatchError(
                f"[{self.tool}] No source column configured for {unmapped}."
            )
        missing = [self.column_map[c] for c in canonical if self.column_map[c] not in df.columns]
        if missing:
            raise SchemaMismatchError(
                f"[{self.tool}] Columns not found in input: {fmt_ids(missing)}. "
                f"Available: {fmt_ids(df.columns)}"
            )

    def _signal_to_float(self, df: pl.DataFrame, col: str) -> pl.DataFrame:
        """Resolve every missing-value sentinel of one signal column to null (Float64)."""
        dtype = df.schema[col]
        if dtype.is_numeric():
            num = pl.col(col).cast(pl.Float64)
            return df.with_columns(
                pl.when(num.is_nan() | (num == 0)).then(None).otherwise(num).alias(col)
            )

        text = pl.col(col).cast(pl.Utf8).str.strip_chars()
        cleaned = pl.when(text.is_in(self.missing_values)).then(None).otherwise(text)
        probe = df.select(
            cleaned.alias("_txt"),
            cleaned.cast(pl.Float64, strict=False).alias("_num"),
        )
        bad = probe.filter(pl.col("_txt").is_not_null() & pl.col("_num").is_null())
        if bad.height:
            examples = bad.get_column("_txt").unique().head(5).to_list()
            raise ValueError(
                f"Column {col!r} holds {bad.height} non-numeric value(s) that are not "
                f"known missing-value sentinels, e.g. {examples}. "
                "Add them to dataset.missing_values if they mean 'not observed'."
            )
        num = cleaned.cast(pl.Float64, strict=False)
        return df.with_columns(
            pl.when(num.is_nan() | (num == 0)).then(None).otherwise(num).alias(col)
        )

    def _standardize_features(self, df: pl.DataFrame) -> Tuple[pl.DataFrame, List[str]]:
        """Copy feature columns to canonical names, add null optional ones, cast to canonical dtypes."""
        copies = {}
        for canonical in FEATURE_COLUMNS:
            src = self.column_map.get(canonical)
            if src is None:
                continue
            if src not in df.columns:
                log_warning(f"Column '{src}' not found in input data; {canonical} left empty.")
                continue
            if canonical in df.columns and canonical != src:
                raise ValueError(
                    f"Cannot rename '{src}' to standardized '{canonical}' because "
                    f"'{canonical}' already exists in the dataset."
                )
            copies[canonical] = src
        # one source column may back several canonical ones (gene_id as both IDs)
        if copies:
            df = df.with_columns([pl.col(src).alias(canonical) for canonical, src in copies.items()])

        missing_optional = [c for c in (COL_MZ, COL_CHARGE) if c not in df.columns]
        if missing_optional:
            df = df.with_columns([pl.lit(None).alias(c) for c in missing_optional])

        charge_before = df.get_column(COL_CHARGE).is_not_null().sum()
        df = df.with_columns(
            pl.col(COL_PEPTIDE_ID).cast(pl.Utf8),
            pl.col(COL_PROTEIN_ID).cast(pl.Utf8),
            pl.col(COL_MZ).cast(pl.Float64, strict=False),
            pl.col(COL_CHARGE).cast(pl.Int64, strict=False),
        )
        lost = charge_before - df.get_column(COL_CHARGE).is_not_null().sum()
        if lost:
            log_warning(f"{lost} CHARGE value(s) are not single integers and were left empty.")

        extra = [c for c in self.annotation_columns + self.organism_columns if c in df.columns]
        absent = [c for c in self.annotation_columns + self.organism_columns if c not in df.columns]
        if absent:
            raise SchemaMismatchError(f"Annotation columns not found in input: {fmt_ids(absent)}")
        return df, list(dict.fromkeys(extra))

    def _long_to_canonical(self, df: pl.DataFrame) -> pl.DataFrame:
        self._require_columns(df, [COL_PEPTIDE_ID, COL_PROTEIN_ID, COL_SAMPLE, COL_SIGNAL])

        renames = {self.column_map[COL_SAMPLE]: COL_SAMPLE, self.column_map[COL_SIGNAL]: COL_SIGNAL}
        df = df.rename({src: dst for src, dst in renames.items() if src != dst})
        df, extra = self._standardize_features(df)
        df = df.with_columns(pl.col(COL_SAMPLE).cast(pl.Utf8).str.strip_chars())
        df = self._signal_to_float(df, COL_SIGNAL)

        if self.sample_map is not None:
            present = set(df.get_column(COL_SAMPLE).unique().to_list())
            absent = sorted(set(self.sample_map) - present)
            if absent:
                raise SchemaMismatchError(
                    f"Configured samples not found in '{self.column_map[COL_SAMPLE]}': {fmt_ids(absent)}"
                )
            dropped = sorted(present - set(self.sample_map))
            if dropped:
                log_info(f"Ignoring {len(dropped)} run(s) not listed in dataset.samples: {fmt_ids(dropped)}")
            df = df.filter(pl.col(COL_SAMPLE).is_in(list(self.sample_map))).with_columns(
                pl.col(COL_SAMPLE).replace(self.sample_map)
            )

        return df.select([*FEATURE_COLUMNS, *extra, COL_SAMPLE, COL_SIGNAL])

    def _wide_to_canonical(self, df: pl.DataFrame) -> pl.DataFrame:
        self._require_columns(df, [COL_PEPTIDE_ID, COL_PROTEIN_ID])
        if not self.sample_map:
            raise SchemaMismatchError(
                "Wide input requires dataset.samples (list of sample columns, or a "
                "mapping source column -> sample ID)."
            )
        absent = [c for c in self.sample_map if c not in df.columns]
        if absent:
            raise SchemaMismatchError(f"Sample columns not found in wide input: {fmt_ids(absent)}")

        df, extra = self._standardize_features(df)
        for col in self.sample_map:
            df = self._signal_to_float(df, col)

        wide = df.select([*FEATURE_COLUMNS, *extra, *self.sample_map]).rename(
            {src: sid for src, sid in self.sample_map.items() if src != sid}
        )
        return self.to_long(wide, self.sample_ids)

    def harmonize_long(self, df: pl.DataFrame) -> pl.DataFrame:
        """Canonical long table: feature columns + annotation + SAMPLE + SIGNAL."""
        if self.input_layout == "wide":
            return self._wide_to_canonical(df)
        return self._long_to_canonical(df)

    @log_time("Data Harmonizing")
    def harmonize(self, df: pl.DataFrame) -> pl.DataFrame:
        """Canonical wide table: one row per PEPTIDE_ID, one Float64 column per sample."""
        long_df = self.harmonize_long(df)
        samples = self.sample_ids
        if samples is None:
            samples = long_df.get_column(COL_SAMPLE).unique(maintain_order=True).to_list()
        self.resolved_samples = list(samples)
        wide = self.to_wide(long_df, samples)
        log_info(f"[{self.tool}] {wide.height} features x {len(samples)} samples ({self.input_layout} input).")
        return wide

    def to_long(self, wide: pl.DataFrame, samples: List[str]) -> pl.DataFrame:
        """Wide -> long; null cells are not materialized."""
        id_vars = [c for c in wide.columns if c not in samples]
        return (
            wide.unpivot(index=id_vars, on=samples, variable_name=COL_SAMPLE, value_name=COL_SIGNAL)
                .with_columns(pl.col(COL_SAMPLE).cast(pl.Utf8), pl.col(COL_SIGNAL).cast(pl.Float64))
                .filter(pl.col(COL_SIGNAL).is_not_null() & ~pl.col(COL_SIGNAL).is_nan())
        )

    def to_wide(self, long_df: pl.DataFrame, samples: List[str], aggregate: Optional[str] = None) -> pl.DataFrame:
        """
        Long -> wide for a fixed sample set.

        Duplicate (feature, sample) rows are aggregated; a group with no valid
        value stays null. Samples without any value become all-null columns.
        Features without a single value are dropped. Rows are sorted by PEPTIDE_ID.
        """
        aggregate = (aggregate or self.aggregate).lower()
        fn_map = {
            "sum":    pl.col(COL_SIGNAL).sum(),
            "mean":   pl.col(COL_SIGNAL).mean(),
            "median": pl.col(COL_SIGNAL).median(),
            "max":    pl.col(COL_SIGNAL).max(),
            "min":    pl.col(COL_SIGNAL).min(),
        }
        if aggregate not in fn_map:
            raise ValueError(f"Unsupported aggregate_fn '{aggregate}'")

        meta_cols = [c for c in long_df.columns if c not in (COL_PEPTIDE_ID, COL_SAMPLE, COL_SIGNAL)]
        meta = long_df.group_by(COL_PEPTIDE_ID, maintain_order=True).agg(
            [pl.col(c).drop_nulls().first().alias(c) for c in meta_cols]
        )

        # polars sums an all-null group to 0; force those groups back to null
        n_valid = pl.col(COL_SIGNAL).is_not_null().sum().alias("_NVALID")
        agg = (
            long_df.filter(pl.col(COL_SAMPLE).is_in(samples))
            .group_by([COL_PEPTIDE_ID, COL_SAMPLE], maintain_order=True)
            .agg([fn_map[aggregate].alias(COL_SIGNAL), n_valid])
            .with_columns(
                pl.when(pl.col("_NVALID") == 0).then(None).otherwise(pl.col(COL_SIGNAL)).alias(COL_SIGNAL)
            )
            .drop("_NVALID")
        )
        if agg.height:
            values = agg.pivot(on=COL_SAMPLE, index=COL_PEPTIDE_ID, values=COL_SIGNAL)
        else:
            values = pl.DataFrame(schema={COL_PEPTIDE_ID: pl.Utf8})

        absent = [s for s in samples if s not in values.columns]
        if absent:
            log_warning(f"No signal at all for sample(s) {fmt_ids(absent)}; columns left empty.")
            values = values.with_columns([pl.lit(None, dtype=pl.Float64).alias(s) for s in absent])

        # ORGANISM, when already present, stays the last column
        tail = [c for c in meta_cols if c == COL_ORGANISM]
        head = [c for c in meta_cols if c != COL_ORGANISM]
        wide = (
            meta.join(values, on=COL_PEPTIDE_ID, how="left")
                .with_columns([pl.col(s).cast(pl.Float64) for s in samples])
                .select([COL_PEPTIDE_ID, *head, *samples, *tail])
        )

        n_before = wide.height
        wide = wide.filter(pl.any_horizontal([pl.col(s).is_not_null() for s in samples]))
        if wide.height < n_before:
            log_info(f"Dropped {n_before - wide.height} feature(s) with no observed signal.")

        wide = wide.sort(COL_PEPTIDE_ID)
        if COL_ORGANISM not in wide.columns:
            wide = self._attach_organism(wide)
        return wide

    def _attach_organism(self, wide: pl.DataFrame) -> pl.DataFrame:
        sources = [COL_PROTEIN_ID] + [c for c in self.organism_columns if c in wide.columns]
        labels = [
            classify_organism([None if v is None else str(v) for v in row], self.organism_patterns)
            for row in wide.select(sources).rows()
        ]
        return wide.with_columns(pl.Series(COL_ORGANISM, labels, dtype=pl.Utf8))


def split_wide(wide: pl.DataFrame, samples: List[str]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Canonical wide frame -> (abundance matrix, feature annotation), both indexed by PEPTIDE_ID."""
    missing = [s for s in samples if s not in wide.columns]
    if missing:
        raise SchemaMismatchError(f"Samples absent from the harmonized table: {fmt_ids(missing)}")

    pdf = wide.to_pandas().set_index(COL_PEPTIDE_ID)
    matrix = pdf[samples].astype(float)
    annotation = pdf[[c for c in pdf.columns if c not in samples]].copy()
    matrix.columns.name = None
    return matrix, annotation
