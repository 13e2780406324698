# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging
import warnings

from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy import sparse

from ._utils import _check_counts
from .tools import significant_markers


logger = logging.getLogger("marrowpy")

TEXT_SUFFIXES = {".csv": ",", ".tsv": "\t", ".txt": "\t"}
GENES_FILES = ("features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv")
BARCODES_FILES = ("barcodes.tsv.gz", "barcodes.tsv")


def _suffix(path: Path) -> str:
    suffixes = [s for s in path.suffixes if s != ".gz"]
    return suffixes[-1].lower() if suffixes else ""


def _find_sibling(directory: Path, names: tuple[str, ...]) -> Path:
    for name in names:
        if (directory / name).exists():
            return directory / name
    raise FileNotFoundError(f"None of {', '.join(names)} found in {directory}")


def _read_mtx(
    path: Path, genes_path: Path | None, barcodes_path: Path | None
) -> AnnData:
    genes_path = genes_path or _find_sibling(path.parent, GENES_FILES)
    barcodes_path = barcodes_path or _find_sibling(path.parent, BARCODES_FILES)

    # [genes, cells] -> [cells, genes]
    adata = sc.read_mtx(path).T
    genes = pd.read_csv(genes_path, sep="\t", header=None, dtype=str)
    barcodes = pd.read_csv(barcodes_path, sep="\t", header=None, dtype=str)

    if genes.shape[0] != adata.n_vars or barcodes.shape[0] != adata.n_obs:
        raise ValueError(
            f"Matrix {path.name} is {adata.n_vars} genes x {adata.n_obs} cells, "
            f"but {genes.shape[0]} gene names and {barcodes.shape[0]} barcodes are given."
        )

    adata.var_names = genes[1 if genes.shape[1] > 1 else 0].to_numpy()
    adata.var["gene_ids"] = genes[0].to_numpy()
    adata.obs_names = barcodes[0].to_numpy()
    adata.X = sparse.csr_matrix(adata.X)
    return adata


def _read_text(path: Path, sep: str) -> AnnData:
    try:
        # read_csv renames repeated headers, so barcodes come from the raw first row
        header = pd.read_csv(path, sep=sep, header=None, nrows=1, dtype=str)
        df = pd.read_csv(path, sep=sep, index_col=0)
    except pd.errors.ParserError as exc:
        raise ValueError(f"Malformed count matrix {path}: {exc}") from exc
    except pd.errors.EmptyDataError as exc:
        raise ValueError(f"Count matrix {path} is empty.") from exc

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(
            f"Malformed count matrix {path}: non-numeric values in column '{non_numeric[0]}'."
        )

    barcodes = pd.Index(header.iloc[0, 1:].astype(str).str.strip())
    if barcodes.has_duplicates:
        dup = barcodes[barcodes.duplicated()].unique()
        raise ValueError(
            f"Cell barcodes must be unique, found {len(dup)} duplicated in {path.name}, "
            f"e.g. '{dup[0]}'."
        )

    # [genes, cells] -> [cells, genes]
    return AnnData(
        X=sparse.csr_matrix(df.to_numpy(dtype=np.float32).T),
        obs=pd.DataFrame(index=barcodes),
        var=pd.DataFrame(index=df.index.astype(str)),
    )


def _normalize_gene_names(adata: AnnData, gene_name_sep: str | None) -> None:
    ids = pd.Index(adata.var_names.astype(str))
    if "gene_ids" not in adata.var:
        adata.var["gene_ids"] = ids.to_numpy()

    names = ids.str.strip()
    if gene_name_sep:
        names = names.str.rsplit(gene_name_sep, n=1).str[-1]
    # keep the identifier if nothing is left after truncation
    names = pd.Index(np.where(names == "", ids, names))
    adata.var_names = names

    if not adata.var_names.is_unique:
        n_dup = int(adata.var_names.duplicated().sum())
        logger.info("%i duplicated gene names are made unique", n_dup)
        adata.var_names_make_unique()


def read_counts(
    path: str | Path,
    gene_name_sep: str | None = None,
    genes_path: str | Path | None = None,
    barcodes_path: str | Path | None = None,
) -> AnnData:
    """
    Reads a gene by cell count matrix into a cell by gene AnnData object.

    Supported inputs: 10x directory (``matrix.mtx`` with ``features.tsv`` / ``genes.tsv``
    and ``barcodes.tsv``, gzipped or not), a single ``.mtx`` file with gene and barcode files
    next to it (or given explicitly), ``.h5ad``, and delimited text (``.csv``, ``.tsv``, ``.txt``,
    gzipped or not) with genes as rows and cells as columns.

    Gene names are stripped, truncated to the part after the last ``gene_name_sep``
    (e.g. ``"GRCh38_____CD34"`` with ``"_"`` gives ``"CD34"``) and made unique.
    Original identifiers are kept in ``adata.var["gene_ids"]``.

    :param path: path to the count matrix
    :type path: str | Path
    :param gene_name_sep: separator to truncate gene identifiers at, defaults to None
    :type gene_name_sep: str | None, optional
    :param genes_path: gene names file for a ``.mtx`` input, defaults to None
    :type genes_path: str | Path | None, optional
    :param barcodes_path: barcodes file for a ``.mtx`` input, defaults to None
    :type barcodes_path: str | Path | None, optional
    :return: AnnData object with raw counts in ``adata.X``
    :rtype: AnnData
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    suffix = _suffix(path)
    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=False)
    elif suffix == ".h5ad":
        adata = sc.read_h5ad(path)
    elif suffix == ".mtx":
        adata = _read_mtx(
            path,
            Path(genes_path) if genes_path else None,
            Path(barcodes_path) if barcodes_path else None,
        )
    elif suffix in TEXT_SUFFIXES:
        adata = _read_text(path, TEXT_SUFFIXES[suffix])
    else:
        raise ValueError(
            f"Unsupported count matrix format '{path.name}'. "
            "Use a 10x directory, .mtx, .h5ad, .csv, .tsv or .txt file."
        )

    _normalize_gene_names(adata, gene_name_sep)
    _check_counts(adata)

    logger.info("Read %i cells x %i genes from %s", adata.n_obs, adata.n_vars, path)
    return adata


def read_reference(path: str | Path, label_key: str = "label") -> AnnData:
    """
    Reads a labeled, log-normalized reference atlas from ``.h5ad``.
    Cells without a label are dropped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference not found: {path}")

    adata = sc.read_h5ad(path)
    if label_key not in adata.obs:
        raise ValueError(f"Column '{label_key}' not found in the reference obs.")

    labeled = adata.obs[label_key].notna().to_numpy()
    if not labeled.all():
        logger.warning("%i reference cells without a label are dropped", (~labeled).sum())
        adata = adata[labeled].copy()

    if adata.obs[label_key].nunique() < 2:
        raise ValueError("Reference should contain at least two labels.")
    if "log1p" not in adata.uns:
        warnings.warn("Gene expressions in reference should be log1p-transformed")

    return adata


def write_markers(
    markers: pd.DataFrame,
    path: str | Path,
    sep: str | None = None,
    max_pval_adj: float | None = None,
) -> pd.DataFrame:
    """
    Writes a marker table as delimited text, optionally keeping only genes
    with adjusted p-value below ``max_pval_adj``. The separator is taken
    from the file extension unless given. Returns the written table.
    """
    path = Path(path)
    if sep is None:
        sep = TEXT_SUFFIXES.get(_suffix(path), ",")

    table = markers if max_pval_adj is None else significant_markers(markers, max_pval_adj)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep=sep, index=False)

    logger.info("%i marker rows written to %s", table.shape[0], path)
    return table
