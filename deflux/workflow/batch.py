"""Runs several independent studies on a bounded process pool.

Each study goes through load, harmonize, normalize, rollup, fit, moderate,
evaluate, assemble and export in one worker. A failing study is reported with
its error kind and never stops its siblings.
"""

import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from deflux.analysis.limma_pipeline import run_limma_pipeline
from deflux.export.de_exporter import DEExporter
from deflux.export.result_table import ResultTable
from deflux.utils.errors import error_kind
from deflux.utils.semantics import COL_FEATURE_ID
from deflux.utils.utils import log_error, log_info, log_time, logger, setup_logging
from deflux.workflow.dataset import Dataset


@dataclass
class StudyOutcome:
    name: str
    result: Optional[ResultTable] = None
    paths: Dict[str, Path] = field(default_factory=dict)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


@dataclass
class BatchReport:
    outcomes: Dict[str, StudyOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.ok]

    @property
    def failed(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def results(self) -> Dict[str, ResultTable]:
        return {n: o.result for n, o in self.outcomes.items() if o.ok}


def study_configs(config: dict) -> Dict[str, dict]:
    """`studies:` mapping of the config; a config without one is a single study."""
    studies = config.get("studies")
    if studies is None:
        name = (config.get("dataset") or {}).get("name", "study")
        return {str(name): config}
    if not isinstance(studies, dict) or not studies:
        raise ValueError("'studies' must be a non-empty mapping of study name -> study config.")
    return {str(k): (v or {}) for k, v in studies.items()}


@log_time("Study")
def run_study(name: str, study_cfg: dict) -> StudyOutcome:
    """Run one study end to end; any error is returned in the outcome, not raised."""
    try:
        log_info(f"[{name}]")
        dataset = Dataset(**{**study_cfg, "name": name})
        result = run_limma_pipeline(
            dataset.matrix,
            dataset.metadata,
            dataset.spec,
            analysis_cfg=study_cfg.get("analysis") or {},
            weights=dataset.weights,
            annotation=dataset.annotation,
            design=dataset.design,
        )

        paths = {}
        export_cfg = study_cfg.get("exports") or {}
        if export_cfg.get("export_table", True):
            paths = DEExporter(
                result,
                output_path=export_cfg.get("path_table", "results"),
                prefix=export_cfg.get("prefix", name),
                use_xlsx=bool(export_cfg.get("use_xlsx", False)),
                sig_threshold=float(export_cfg.get("sig_threshold", 0.05)),
                head_rows=int(export_cfg.get("head_rows", 50)),
            ).export()
        return StudyOutcome(name=name, result=result, paths=paths)
    except Exception as exc:
        log_error(f"[{name}] failed with {error_kind(exc)}: {exc}")
        return StudyOutcome(name=name, error_kind=error_kind(exc), error_message=str(exc))


def _worker(args: Tuple[str, dict, int]) -> StudyOutcome:
    """Process-pool entry point (top level, so it pickles)."""
    name, study_cfg, log_level = args
    setup_logging(log_level)
    return run_study(name, study_cfg)


@log_time("Batch")
def run_studies(config: dict, max_workers: Optional[int] = None) -> BatchReport:
    """
    Run every study of `config` and wait for all of them.

    Args:
        config: full configuration (`studies:` mapping, or a single study).
        max_workers: pool size; defaults to `config['max_workers']`, then the
            CPU count. 1 runs the studies in-process, in config order.

    Returns:
        BatchReport with one StudyOutcome per study, in config order.
    """
    studies = study_configs(config)
    if max_workers is None:
        max_workers = config.get("max_workers") or os.cpu_count() or 1
    n_workers = max(1, min(int(max_workers), len(studies)))
    log_info(f"{len(studies)} study(ies), {n_workers} worker(s)")

    outcomes: Dict[str, StudyOutcome] = {}
    if n_workers == 1:
        for name, cfg in studies.items():
            outcomes[name] = run_study(name, cfg)
    else:
        level = logger.getEffectiveLevel()
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(_worker, (name, cfg, level)): name
                for name, cfg in studies.items()
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcomes[name] = future.result()
                except Exception as exc:
                    # the worker process itself died (pickling, OOM kill)
                    log_error(f"[{name}] worker error: {exc}")
                    outcomes[name] = StudyOutcome(name=name, error_kind=error_kind(exc), error_message=str(exc))

    report = BatchReport({name: outcomes[name] for name in studies})
    log_info(f"Succeeded: {report.succeeded}")
    if report.failed:
        log_error(
            "Failed: " + ", ".join(f"{n} ({report.outcomes[n].error_kind})" for n in report.failed)
        )
    return report


def _keyed_table(result: ResultTable, on: str) -> pd.DataFrame:
    """Result table indexed by the join key; first occurrence of a repeated key wins."""
    if on == "feature":
        return result.table
    if on not in result.table.columns:
        raise KeyError(f"Join column {on!r} not found in result table.")
    keyed = result.table.set_index(result.table[on].astype(str).values)
    dup = keyed.index.duplicated()
    if dup.any():
        log_info(f"Joint table: {int(dup.sum())} repeated {on} value(s), first occurrence kept.")
    return keyed.loc[~dup]


def joint_table(results: Dict[str, ResultTable], on: str = "feature") -> pd.DataFrame:
    """
    Cross-study table over the identifiers present in every study.

    `on` is 'feature' (the feature IDs of the result tables) or an annotation
    column such as PROTEIN_ID, for studies analysed at different levels or
    with different tools. Rows follow the first study's order; each study
    contributes its contrast statistics as `<study>_<STAT>_<contrast>`.
    """
    if not results:
        raise ValueError("joint_table needs at least one result.")

    names = list(results)
    tables = {name: _keyed_table(results[name], on) for name in names}
    first = tables[names[0]].index
    shared = set(first)
    for name in names[1:]:
        shared &= set(tables[name].index)
    index = pd.Index([f for f in first if f in shared])
    log_info(f"Joint table: {len(index)} identifier(s) shared by {len(names)} studies.")

    key_col = COL_FEATURE_ID if on == "feature" else on
    parts = [pd.DataFrame({key_col: index}, index=index)]
    for name in names:
        res = results[name]
        table = tables[name]
        for contrast in res.contrast_names:
            cols = res.contrast_block(contrast).columns
            block = table.loc[index, [f"{c}_{contrast}" for c in cols]]
            block.columns = [f"{name}_{c}_{contrast}" for c in cols]
            parts.append(block)
    return pd.concat(parts, axis=1).reset_index(drop=True)
