"""Export ranked differential-methylation results to Excel/CSV and write .h5ad.

The xlsx holds a README sheet, the full ranked table, the significant subset
and the list of probes excluded for non-finite values. With `use_xlsx=False`
each table becomes a CSV sharing the output filename prefix.
"""
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from pathlib import Path
from typing import Dict, Optional

import anndata as ad
import pandas as pd

from methylflux.analysis.report import RankedReport
from methylflux.utils.utils import log_info, log_time


def _package_version() -> str:
    try:
        return _pkg_version("methylflux")
    except PackageNotFoundError:
        return "0+unknown"


class DMPExporter:
    def __init__(
        self,
        report: RankedReport,
        output_path,
        use_xlsx=True,
        sig_threshold=0.05,
        lfc_threshold=0.0,
    ):
        """Excel/CSV exporter for a RankedReport."""
        self.report = report
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.lfc_threshold = lfc_threshold

    def _tables(self) -> Dict[str, Optional[pd.DataFrame]]:
        ranked = self.report.table.copy()
        ranked.insert(0, "rank", range(1, len(ranked) + 1))
        ranked["decision"] = self.report.decide_tests(self.sig_threshold, self.lfc_threshold)

        significant = self.report.top_table(n=None, p_value=self.sig_threshold, lfc=self.lfc_threshold)
        excluded = pd.DataFrame(index=pd.Index(self.report.excluded_ids, name=ranked.index.name))

        return {
            "Ranked DMPs": ranked,
            "Significant": significant if len(significant) else None,
            "Excluded": excluded if len(excluded) else None,
        }

    def _readme(self) -> str:
        s = self.report.summarize(self.sig_threshold, self.lfc_threshold)
        return (
            "methylflux Differential Methylation Export\n\n"
            f"Version: {_package_version()}\n"
            f"Coefficient: {s['coefficient']}\n"
            f"Moderation: {s.get('moderation', 'limma')} (s2_prior={s['s2_prior']:.4g}, df_prior={s['df_prior']:.4g})\n"
            f"Correction: {s['correction']}\n"
            f"Probes: {s['n_features']} ({s['n_scored']} scored, {s['n_excluded']} excluded)\n"
            f"Significant at adj.P.Val <= {self.sig_threshold}: {s['n_up']} up, {s['n_down']} down\n\n"
            "Sheet Descriptions:\n"
            "- Ranked DMPs: all probes ordered by adj.P.Val, excluded probes last with empty statistics.\n"
            "- Significant: probes passing the adj.P.Val and |logFC| thresholds.\n"
            "- Excluded: probes with non-finite values, left out of variance pooling.\n"
        )

    def _export_excel(self, tables: Dict[str, Optional[pd.DataFrame]], readme: str) -> Path:
        """Write selected tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            writer.book.use_zip64()

            # README: one line per row
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )

            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})

            for name, df in tables.items():
                if df is None:
                    continue

                ws = writer.book.add_worksheet(name)
                df_out = df.reset_index()
                columns = list(df_out.columns)
                ws.write_row(0, 0, columns, header_fmt)
                df_out.to_excel(writer, sheet_name=name, startrow=1, index=False, header=False)
                ws.set_column(0, len(columns) - 1, 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, Optional[pd.DataFrame]]) -> Path:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        first = None
        for name, df in tables.items():
            if df is not None:
                path = Path(f"{prefix}_{name.replace(' ', '_')}.csv")
                df.to_csv(path)
                first = first or path
        return first

    @log_time("Differential Methylation - exporting table")
    def export(self) -> Path:
        """Export README + ranked tables as xlsx (or csv)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        tables = self._tables()
        if self.use_xlsx:
            path = self._export_excel(tables, self._readme())
        else:
            path = self._export_csvs(tables)
        log_info(f"Table written to {path}")
        return path

    @staticmethod
    @log_time("Exporting .h5ad")
    def export_adata(adata: ad.AnnData, h5ad_path) -> Path:
        """Write a compact .h5ad with categorical annotation and version metadata."""
        adata = adata.copy()
        for col in adata.obs.columns:
            if adata.obs[col].dtype == object:
                adata.obs[col] = adata.obs[col].astype(str).astype("category")

        meta = adata.uns.get("methylflux", {})
        if not isinstance(meta, dict):
            meta = {}
        meta.setdefault("version", _package_version())
        meta.setdefault("created_at", datetime.now().isoformat(timespec="seconds"))
        adata.uns["methylflux"] = meta

        h5ad_path = Path(h5ad_path)
        h5ad_path.parent.mkdir(parents=True, exist_ok=True)
        adata.write(h5ad_path, compression="gzip")
        return h5ad_path
