# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

import numpy as np
import scanpy as sc

from anndata import AnnData
from harmonypy import run_harmony
from scipy.sparse import issparse

from ._utils import _check_counts, _rank_descending


logger = logging.getLogger("marrowpy")


def _check_left(subset: np.ndarray, what: str, threshold: str) -> None:
    if not subset.any():
        raise ValueError(
            f"Filtering with {threshold} removes all {what}. "
            "Relax the threshold or check the input matrix."
        )


def _qc_metrics(adata: AnnData, mt_pattern: str) -> None:
    adata.var["mt"] = adata.var_names.str.contains(mt_pattern, regex=True)
    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )
    adata.obs["pct_counts_mt"] = adata.obs["pct_counts_mt"].fillna(0.0)


def filter_qc(
    adata: AnnData,
    min_cells: int = 3,
    min_genes: int = 1,
    qc_min_genes: int | None = None,
    qc_max_genes: int | None = None,
    max_pct_mt: float | None = None,
    mt_pattern: str = "^MT-",
    copy: bool = True,
) -> AnnData | None:
    """
    Drops genes detected in fewer than ``min_cells`` cells and cells with fewer than
    ``min_genes`` detected genes, computes per-cell QC metrics
    (``total_counts``, ``n_genes_by_counts``, ``pct_counts_mt``) and drops cells outside
    the ``[qc_min_genes, qc_max_genes]`` band or with more than ``max_pct_mt`` percent
    of mitochondrial counts. Both passes are repeated until nothing more is removed,
    so filtering the output again with the same thresholds changes nothing.

    Raw counts are kept in ``adata.layers["counts"]``.

    :param adata: AnnData object with raw counts in ``adata.X``
    :type adata: AnnData
    :param min_cells: minimum number of cells a gene should be detected in, defaults to 3
    :type min_cells: int, optional
    :param min_genes: minimum number of detected genes per cell, defaults to 1
    :type min_genes: int, optional
    :param qc_min_genes: lower bound of detected genes per cell after QC, defaults to None
    :type qc_min_genes: int | None, optional
    :param qc_max_genes: upper bound of detected genes per cell after QC, defaults to None
    :type qc_max_genes: int | None, optional
    :param max_pct_mt: maximum percent of counts in mitochondrial genes, defaults to None
    :type max_pct_mt: float | None, optional
    :param mt_pattern: regular expression matching mitochondrial gene names, defaults to "^MT-"
    :type mt_pattern: str, optional
    :param copy: if to return a filtered copy or filter ``adata`` in place, defaults to True
    :type copy: bool, optional
    :return: filtered AnnData if ``copy=True``, otherwise None
    """
    _check_counts(adata)
    adata = adata.copy() if copy else adata
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    n_obs, n_vars = adata.shape
    n_rounds = 0
    while True:
        n_rounds += 1
        shape = adata.shape

        gene_subset, _ = sc.pp.filter_genes(adata, min_cells=min_cells, inplace=False)
        _check_left(gene_subset, "genes", f"min_cells={min_cells}")
        adata._inplace_subset_var(gene_subset)

        cell_subset, _ = sc.pp.filter_cells(adata, min_genes=min_genes, inplace=False)
        _check_left(cell_subset, "cells", f"min_genes={min_genes}")
        adata._inplace_subset_obs(cell_subset)

        _qc_metrics(adata, mt_pattern)
        n_genes = adata.obs["n_genes_by_counts"].to_numpy()
        qc_subset = np.ones(adata.n_obs, dtype=bool)
        if qc_min_genes is not None:
            qc_subset &= n_genes >= qc_min_genes
        if qc_max_genes is not None:
            qc_subset &= n_genes <= qc_max_genes
        if max_pct_mt is not None:
            qc_subset &= adata.obs["pct_counts_mt"].to_numpy() <= max_pct_mt
        _check_left(
            qc_subset,
            "cells",
            f"qc_min_genes={qc_min_genes}, qc_max_genes={qc_max_genes}, "
            f"max_pct_mt={max_pct_mt}",
        )
        adata._inplace_subset_obs(qc_subset)

        if adata.shape == shape:
            break

    # metrics of the final object
    _qc_metrics(adata, mt_pattern)
    params = {
        "min_cells": min_cells,
        "min_genes": min_genes,
        "qc_min_genes": qc_min_genes,
        "qc_max_genes": qc_max_genes,
        "max_pct_mt": max_pct_mt,
        "mt_pattern": mt_pattern,
    }
    # None can't be written to h5ad
    adata.uns["qc"] = {k: v for k, v in params.items() if v is not None}

    logger.info(
        "QC filtering removed %i of %i cells and %i of %i genes (%i rounds)",
        n_obs - adata.n_obs,
        n_obs,
        n_vars - adata.n_vars,
        n_vars,
        n_rounds,
    )
    return adata if copy else None


def normalize(
    adata: AnnData,
    target_sum: float = 1e4,
    layer: str = "counts",
    copy: bool = True,
) -> AnnData | None:
    """
    Library size normalization: counts of each cell are divided by the cell's total,
    multiplied by ``target_sum`` and natural log(x + 1) transformed.

    :param adata: AnnData object with raw counts in ``adata.layers[layer]``
    :type adata: AnnData
    :param target_sum: total counts of each cell after normalization, defaults to 1e4
    :type target_sum: float, optional
    :param layer: layer with raw counts, defaults to "counts"
    :type layer: str, optional
    :param copy: if to return a normalized copy, defaults to True
    :type copy: bool, optional
    """
    assert (
        layer in adata.layers
    ), f"Raw counts are expected in adata.layers['{layer}']. First, run pp.filter_qc."

    adata = adata.copy() if copy else adata
    adata.X = adata.layers[layer].astype(np.float64)

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.uns["normalize"] = {"target_sum": target_sum, "layer": layer}

    return adata if copy else None


def select_features(
    adata: AnnData,
    n_top_genes: int = 2000,
    span: float = 0.3,
    layer: str = "counts",
    copy: bool = True,
) -> AnnData | None:
    """
    Flags ``n_top_genes`` highly variable genes by the variance stabilizing
    transform (vst) method, as provided in Seurat.
    A degree 2 loess trend of log10 variance on log10 mean is fitted on raw counts
    (``scanpy.pp.highly_variable_genes`` with ``flavor="seurat_v3"``),
    genes are ranked by their standardized variance. Ties keep the original gene order.

    Writes ``means``, ``variances``, ``variances_norm``,
    ``highly_variable_rank`` and ``highly_variable`` to ``adata.var``.

    :param adata: AnnData object with raw counts in ``adata.layers[layer]``
    :type adata: AnnData
    :param n_top_genes: number of genes to select, defaults to 2000
    :type n_top_genes: int, optional
    :param span: fraction of genes used for each local regression, defaults to 0.3
    :type span: float, optional
    :param layer: layer with raw counts, defaults to "counts"
    :type layer: str, optional
    :param copy: if to return an annotated copy, defaults to True
    :type copy: bool, optional
    """
    assert (
        layer in adata.layers
    ), f"Raw counts are expected in adata.layers['{layer}']. First, run pp.filter_qc."
    if adata.n_obs < 2:
        raise ValueError("At least two cells are needed to estimate gene variances.")

    adata = adata.copy() if copy else adata

    n_top = min(n_top_genes, adata.n_vars)
    df = sc.pp.highly_variable_genes(
        adata,
        flavor="seurat_v3",
        layer=layer,
        n_top_genes=n_top,
        span=span,
        inplace=False,
    )
    df = df.reindex(adata.var_names)[["means", "variances", "variances_norm"]]
    order = _rank_descending(df["variances_norm"].to_numpy())

    rank = np.full(adata.n_vars, np.nan)
    rank[order[:n_top]] = np.arange(n_top)

    for col in df.columns:
        adata.var[col] = df[col].to_numpy()
    adata.var["highly_variable_rank"] = rank
    adata.var["highly_variable"] = ~np.isnan(rank)
    adata.uns["hvg"] = {"flavor": "seurat_v3", "n_top_genes": n_top_genes, "span": span}

    if n_top < n_top_genes:
        logger.warning(
            "Only %i genes passed QC, all of them are selected (n_top_genes=%i)",
            n_top,
            n_top_genes,
        )
    logger.info("Selected %i highly variable genes", n_top)

    return adata if copy else None


def scale(
    adata: AnnData,
    max_value: float | None = 10,
    use_highly_variable: bool = True,
    copy: bool = True,
) -> AnnData | None:
    """
    Saves log-normalized expressions of all the genes to ``adata.raw``,
    subsets ``adata`` to highly variable genes and scales each of them
    to zero mean and unit variance (saving μ and σ to ``adata.var``).
    Zero variance genes are set to zero.

    :param adata: log-normalized AnnData object
    :type adata: AnnData
    :param max_value: clip scaled values to ``[-max_value, max_value]``, None to not clip, defaults to 10
    :type max_value: float | None, optional
    :param use_highly_variable: if to keep only ``adata.var["highly_variable"]`` genes, defaults to True
    :type use_highly_variable: bool, optional
    :param copy: if to return a scaled copy, defaults to True
    :type copy: bool, optional
    """
    if use_highly_variable:
        assert (
            "highly_variable" in adata.var
        ), "Highly variable genes not found in adata.var. First, run pp.select_features."

    adata = adata.copy() if copy else adata
    adata.raw = adata
    if use_highly_variable:
        adata._inplace_subset_var(adata.var["highly_variable"].to_numpy())

    if issparse(adata.X):
        adata.X = adata.X.toarray()
    n_const = int((np.ptp(adata.X, axis=0) == 0).sum())

    sc.pp.scale(adata, zero_center=True, max_value=max_value)
    if max_value is not None:
        adata.X[adata.X < -max_value] = -max_value

    if n_const:
        logger.info("%i genes have zero variance, their scaled values are 0", n_const)

    return adata if copy else None


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    basis: str = "X_pca",
    adjusted_basis: str = "X_pca_harmony",
    random_state: int = 0,
    verbose: bool = False,
    copy: bool = True,
    **harmony_kwargs,
) -> AnnData | None:
    """
    Run Harmony batch correction on ``adata.obsm[basis]``, save corrected output
    to ``adata.obsm[adjusted_basis]``

    :param adata: adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (``vars_use`` parameter of Harmony)
    :type key: list[str] | str
    :param basis: ``adata.obsm[basis]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type basis: str, optional
    :param adjusted_basis: slot where to put corrected coordinates, defaults to "X_pca_harmony"
    :type adjusted_basis: str, optional
    :param random_state: random seed, defaults to 0
    :type random_state: int, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param copy: if to return a corrected copy, defaults to True
    :type copy: bool, optional
    """
    assert basis in adata.obsm, f"'{basis}' not found in adata.obsm. First, run tl.pca."

    adata = adata.copy() if copy else adata

    ho = run_harmony(
        adata.obsm[basis],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        random_state=random_state,
        **harmony_kwargs,
    )

    Z_corr = np.asarray(ho.Z_corr)
    # [N, d]
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T
    adata.obsm[adjusted_basis] = Z_corr

    converged = bool(ho.check_convergence(1))
    adata.uns["harmony"] = {
        "vars_use": key,
        "K": int(ho.K),
        "basis": basis,
        "adjusted_basis": adjusted_basis,
        "converged": converged,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )

    return adata if copy else None
