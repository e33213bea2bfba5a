"""Export differential-abundance results to flat files.

Per study, under the output directory:
- <prefix>_results.tsv: the full result table
- <prefix>_results_head.tsv: its first rows, in table order
- <prefix>_design.tsv: design matrix joined to the sample metadata
- <prefix>_results.xlsx (optional): README, Summary and Design sheets
"""
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd

from deflux.export.result_table import ResultTable
from deflux.utils.semantics import STAT_QVALUE
from deflux.utils.utils import log_info, log_time


class DEExporter:
    def __init__(
        self,
        result: ResultTable,
        output_path,
        prefix: str = "deflux",
        use_xlsx: bool = False,
        sig_threshold: float = 0.05,
        head_rows: int = 50,
    ):
        """Flat-file exporter for one study's `ResultTable`."""
        self.result = result
        self.output_path = Path(output_path)
        self.prefix = prefix
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.head_rows = int(head_rows)

    def _path(self, suffix: str) -> Path:
        return self.output_path / f"{self.prefix}_{suffix}"

    def _summary(self) -> pd.DataFrame:
        """One row per contrast: tested features and features under the q-value threshold."""
        rows = []
        for name in self.result.contrast_names:
            q = self.result.table[f"{STAT_QVALUE}_{name}"]
            rows.append({
                "CONTRAST": name,
                "N_TESTED": int(q.notna().sum()),
                f"N_Q_BELOW_{self.sig_threshold}": int((q < self.sig_threshold).sum()),
            })
        return pd.DataFrame(rows)

    def _readme(self) -> str:
        try:
            version = _pkg_version("deflux")
        except PackageNotFoundError:
            version = "0+unknown"
        return (
            "deflux differential abundance export\n"
            f"version {version}, created {datetime.now().isoformat(timespec='seconds')}\n\n"
            "Sheet Descriptions:\n"
            "- Results: annotation, per-contrast log2FC, SE, t, p and BH q-values, log2 abundances.\n"
            "- Summary: features tested and significant per contrast.\n"
            "- Design: design matrix joined to the sample metadata.\n\n"
            f"Prior: s2_prior = {self.result.s2_prior:.4g}, df_prior = {self.result.df_prior:.4g}\n"
        )

    def _export_excel(self, tables: Dict[str, pd.DataFrame]) -> Path:
        """Write tables to a single XLSX with a README sheet."""
        out_file = self._path("results.xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            writer.book.use_zip64()
            pd.DataFrame({"README": self._readme().split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )
            for name, df in tables.items():
                df.replace([np.inf, -np.inf], np.nan).to_excel(writer, sheet_name=name, index=False)
                writer.sheets[name].set_column(0, max(len(df.columns) - 1, 0), 14)
        return out_file

    @log_time("Exporting tables")
    def export(self) -> Dict[str, Path]:
        """Write the TSV outputs (and the XLSX when enabled); returns label -> path."""
        self.output_path.mkdir(parents=True, exist_ok=True)
        table = self.result.table
        design = self.result.design.reset_index().rename(columns={"index": "Sample"})

        paths = {
            "results": self._path("results.tsv"),
            "head": self._path("results_head.tsv"),
            "design": self._path("design.tsv"),
        }
        table.to_csv(paths["results"], sep="\t", index=False)
        self.result.head(self.head_rows).to_csv(paths["head"], sep="\t", index=False)
        design.to_csv(paths["design"], sep="\t", index=False)

        if self.use_xlsx:
            paths["xlsx"] = self._export_excel({
                "Results": table,
                "Summary": self._summary(),
                "Design": design,
            })

        for label, path in paths.items():
            log_info(f"{label}: {path}")
        return paths
