import warnings
from pathlib import Path
from typing import Union

import anndata as ad
import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from methylflux.analysis.errors import DimensionMismatchError, EmptyInputError
from methylflux.workflow.preprocessing import Preprocessor
from methylflux.utils.utils import log_info, log_time, polars_matrix_to_numpy

# Supress the ImplicitModificationWarning from AnnData
warnings.filterwarnings("ignore", category=UserWarning, message=".*Transforming to str index.*")

NULL_VALUES = ["NA", "NaN", "N/A", ""]


def _to_set(x) -> set:
    """Accept a string or a list of strings."""
    if x is None:
        return set()
    if isinstance(x, str):
        return {x.strip()} if x.strip() else set()
    return {str(v).strip() for v in x if str(v).strip()}


class Dataset:
    """Loads a probe x sample methylation matrix and its sample annotation into AnnData."""
    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}

        self.file_path = dataset_cfg.get("input_file", None)
        self.annotation_file = dataset_cfg.get("annotation_file", None)
        if not self.file_path:
            raise ValueError("dataset.input_file is required.")
        if not self.annotation_file:
            raise ValueError("dataset.annotation_file is required.")

        self.load_method = dataset_cfg.get("load_method", "polars")
        self.probe_column = dataset_cfg.get("probe_column", None)  # None: first column
        self.sample_column = dataset_cfg.get("sample_column", "Sample")
        self.exclude_samples = _to_set(dataset_cfg.get("exclude_samples"))

        self.preprocessor = Preprocessor(dataset_cfg)

        # Process
        self._load_and_process()

    def _load_and_process(self):
        matrix = self._load_table(self.file_path)
        annotation = self._load_table(self.annotation_file)

        probe_col = self.probe_column or matrix.columns[0]
        if probe_col not in matrix.columns:
            raise ValueError(f"Probe column '{probe_col}' not found in {self.file_path}.")
        matrix = matrix.rename({probe_col: "INDEX"})

        self.annotation = self._prepare_annotation(annotation)
        matrix = self._apply_exclude_samples(matrix)

        values, probes = polars_matrix_to_numpy(matrix, index_col="INDEX")
        probes = [str(p) for p in probes]
        samples = [c for c in matrix.columns if c != "INDEX"]
        if values.size == 0:
            raise EmptyInputError(len(probes), len(samples))
        if len(set(probes)) != len(probes):
            raise ValueError(f"Duplicated probe identifiers in {self.file_path}.")

        self.preprocessed_data = self.preprocessor.fit_transform(values, probes, samples)
        self._convert_to_anndata()

    @log_time("Data Loading")
    def _load_table(self, file_path: Union[str, Path]) -> pl.DataFrame:
        """Load a CSV, TSV or parquet file into polars."""
        file_path = str(file_path)
        if file_path.endswith(".parquet"):
            return pl.read_parquet(file_path)
        if not file_path.endswith((".csv", ".tsv", ".txt")):
            raise ValueError("Only CSV, TSV or parquet files are supported.")

        delimiter = "," if file_path.endswith(".csv") else "\t"

        if self.load_method == "polars":
            return pl.read_csv(file_path,
                               separator=delimiter,
                               infer_schema_length=10000,
                               null_values=NULL_VALUES)
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            convert_options = pv_csv.ConvertOptions(null_values=NULL_VALUES, strings_can_be_null=True)
            arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options,
                                          convert_options=convert_options)
            return pl.from_arrow(arrow_table)
        elif self.load_method == "pandas":
            df = pd.read_csv(file_path, delimiter=delimiter, na_values=NULL_VALUES)
            return pl.from_pandas(df)
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    def _prepare_annotation(self, annotation: pl.DataFrame) -> pd.DataFrame:
        if self.sample_column not in annotation.columns:
            raise ValueError(f"Sample column '{self.sample_column}' not found in {self.annotation_file}.")
        df = annotation.to_pandas()
        df[self.sample_column] = df[self.sample_column].astype(str)
        df = df.set_index(self.sample_column)
        if not df.index.is_unique:
            dup = df.index[df.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicated sample id(s) in annotation: {dup[:5]}")
        return df

    def _apply_exclude_samples(self, matrix: pl.DataFrame) -> pl.DataFrame:
        """Drop sample columns if requested."""
        if not self.exclude_samples:
            return matrix

        present = set(matrix.columns) - {"INDEX"}
        to_drop = sorted(self.exclude_samples & present)
        missing = sorted(self.exclude_samples - present)

        if missing:
            head = ", ".join(missing[:10])
            tail = " ..." if len(missing) > 10 else ""
            log_info(f"Exclude samples: {len(missing)} not found in data, ignored: [{head}{tail}]")
        if not to_drop:
            log_info("Exclude samples: nothing to drop.")
            return matrix

        log_info(f"Exclude samples: dropped {len(to_drop)} sample(s).")
        return matrix.drop(to_drop)

    @log_time("Conversion to AnnData")
    def _convert_to_anndata(self):
        """Convert the data to an AnnData object (samples x probes) for downstream analysis."""
        res = self.preprocessed_data
        samples = res.samples

        missing = [s for s in samples if s not in self.annotation.index]
        if missing:
            raise DimensionMismatchError(
                len(samples), len(self.annotation),
                detail=f"{len(missing)} matrix sample(s) missing from annotation, e.g. {missing[:5]}.",
            )
        obs = self.annotation.loc[samples]
        n_unused = len(self.annotation) - len(samples)
        if n_unused:
            log_info(f"Annotation: {n_unused} annotated sample(s) not in the matrix, ignored.")

        var = pd.DataFrame(index=pd.Index(res.probes, name="probe"))

        self.adata = ad.AnnData(
            X=res.processed.T,
            obs=obs,
            var=var,
        )
        if res.beta is not None:
            self.adata.layers["beta"] = res.beta.T
        if res.m_values is not None:
            self.adata.layers["m"] = res.m_values.T

        self.adata.uns["preprocessing"] = {
            "input_file": str(self.file_path),
            "annotation_file": str(self.annotation_file),
            **res.metadata,
        }

    def get_anndata(self) -> ad.AnnData:
        """Export the processed dataset as an AnnData object."""
        return self.adata
