from methylflux.workflow.dataset import Dataset
from methylflux.analysis.limma_pipeline import run_limma_pipeline
from methylflux.export.dmp_exporter import DMPExporter
from methylflux.utils.utils import log_time


@log_time("methylflux Pipeline")
def run_pipeline(config: dict):
    dataset = Dataset(**config)
    adata = dataset.get_anndata()
    adata, report = run_limma_pipeline(adata, config)

    analysis_config = config.get("analysis", {}) or {}
    export_config = analysis_config.get("exports", {}) or {}

    if analysis_config.get("export_table", True):
        exporter = DMPExporter(report,
                               output_path=export_config.get("path_table", "results/dmps.xlsx"),
                               use_xlsx=export_config.get("use_xlsx", True),
                               sig_threshold=analysis_config.get("sign_threshold", 0.05),
                               lfc_threshold=analysis_config.get("lfc_threshold", 0.0),
                               )
        exporter.export()

    if export_config.get("path_h5ad"):
        DMPExporter.export_adata(adata, export_config["path_h5ad"])

    return adata, report
