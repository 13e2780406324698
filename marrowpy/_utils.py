# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy import sparse
from scipy.sparse import issparse
from scipy.stats import median_abs_deviation, rankdata
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger("marrowpy")


def _check_counts(adata: AnnData) -> None:
    """
    Validates that ``adata`` holds a usable count matrix:
    non-empty, non-negative integers, unique cell barcodes.
    Raises ValueError otherwise.
    """
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise ValueError(
            f"Count matrix is empty ({adata.n_obs} cells x {adata.n_vars} genes)."
        )
    if not adata.obs_names.is_unique:
        dup = adata.obs_names[adata.obs_names.duplicated()].unique()
        raise ValueError(
            f"Cell barcodes must be unique, found {len(dup)} duplicated, e.g. '{dup[0]}'."
        )

    X = adata.X
    values = X.data if issparse(X) else np.asarray(X)
    if values.size == 0:
        return
    if not np.all(np.isfinite(values)):
        raise ValueError("Count matrix contains NaN or infinite values.")
    if values.min() < 0:
        raise ValueError("Count matrix contains negative values.")
    if not np.all(np.mod(values, 1) == 0):
        raise ValueError(
            "Count matrix contains non-integer values, raw UMI counts are expected."
        )


def _get_matrix(adata: AnnData, use_raw: bool = False):
    if use_raw:
        assert adata.raw is not None, "use_raw=True, but adata.raw is not set"
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def _rank_descending(values: np.ndarray) -> np.ndarray:
    # stable: ties keep the original gene order
    return np.argsort(-values, kind="stable")


def _knn_indicator(rep: np.ndarray, n_neighbors: int) -> sparse.csr_matrix:
    n = rep.shape[0]
    nn = NearestNeighbors(n_neighbors=n_neighbors)
    nn.fit(rep)
    _, indices = nn.kneighbors(rep)

    # [N, k] neighbors plus the cell itself (kept even if lost in distance ties)
    rows = np.concatenate([np.repeat(np.arange(n), n_neighbors), np.arange(n)])
    cols = np.concatenate([indices.ravel(), np.arange(n)])
    knn = sparse.coo_matrix(
        (np.ones(rows.size), (rows, cols)), shape=(n, n)
    ).tocsr()
    knn.data[:] = 1.0
    return knn


def _snn_graph(
    rep: np.ndarray, n_neighbors: int, prune: float
) -> tuple[sparse.csr_matrix, sparse.csr_matrix]:
    """
    Shared nearest neighbour graph: edge weight is the Jaccard index
    of the two cells' neighbourhoods, edges below ``prune`` are dropped.
    """
    knn = _knn_indicator(rep, n_neighbors)
    n = knn.shape[0]

    # [N, N] number of shared neighbours
    shared = (knn @ knn.T).tocoo()
    sizes = np.asarray(knn.sum(axis=1)).ravel()
    jaccard = shared.data / (sizes[shared.row] + sizes[shared.col] - shared.data)

    keep = (jaccard >= prune) & (shared.row != shared.col)
    snn = sparse.csr_matrix(
        (jaccard[keep], (shared.row[keep], shared.col[keep])), shape=(n, n)
    )
    return knn, snn


def _label_profiles(X, labels: pd.Series, var_names: pd.Index) -> pd.DataFrame:
    """Mean expression per label, [labels, genes]."""
    codes = pd.Categorical(labels)
    indicator = sparse.csr_matrix(
        (np.ones(len(codes)), (codes.codes, np.arange(len(codes)))),
        shape=(len(codes.categories), len(codes)),
    )
    sizes = np.asarray(indicator.sum(axis=1))
    sums = indicator @ X
    sums = sums.toarray() if issparse(sums) else np.asarray(sums)
    return pd.DataFrame(
        sums / sizes, index=codes.categories.astype(str), columns=var_names
    )


def _default_n_marker_genes(n_labels: int) -> int:
    return int(round(500 * (2 / 3) ** np.log2(n_labels)))


def _classic_markers(profiles: pd.DataFrame, n_genes: int) -> list[str]:
    """
    Union over every ordered pair of labels (a, b)
    of the ``n_genes`` genes most up in a compared to b.
    """
    selected = set()
    for a in profiles.index:
        for b in profiles.index:
            if a == b:
                continue
            diff = profiles.loc[a] - profiles.loc[b]
            diff = diff[diff > 0]
            top = diff.iloc[_rank_descending(diff.to_numpy())[:n_genes]]
            selected.update(top.index)
    return [g for g in profiles.columns if g in selected]


def _spearman_scores(X: np.ndarray, profiles: np.ndarray) -> np.ndarray:
    # [cells, genes], [labels, genes] -> [cells, labels]
    q = rankdata(X, axis=1)
    p = rankdata(profiles, axis=1)
    q -= q.mean(axis=1, keepdims=True)
    p -= p.mean(axis=1, keepdims=True)

    q_norm = np.linalg.norm(q, ord=2, axis=1, keepdims=True)
    p_norm = np.linalg.norm(p, ord=2, axis=1, keepdims=True)

    # constant rows have no defined correlation
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = (q @ p.T) / (q_norm @ p_norm.T)
    return np.nan_to_num(scores, nan=0.0, posinf=0.0, neginf=0.0)


def _prune_assignments(
    labels: np.ndarray,
    delta: np.ndarray,
    min_delta: float,
    nmads: float | None,
) -> np.ndarray:
    pruned = delta < min_delta
    if nmads is None:
        return pruned

    for label in np.unique(labels):
        mask = labels == label
        d = delta[mask]
        mad = median_abs_deviation(d, scale="normal")
        if mad > 0:
            pruned[mask] |= d < np.median(d) - nmads * mad
    return pruned
