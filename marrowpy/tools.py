# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Mapping

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from packaging import version
from scipy.sparse import issparse

from ._utils import (
    _classic_markers,
    _default_n_marker_genes,
    _get_matrix,
    _label_profiles,
    _prune_assignments,
    _snn_graph,
    _spearman_scores,
)


LEIDEN_FLAVOR_MIN_VERSION = version.parse("1.10")
UNASSIGNED = "unassigned"
MARKER_COLUMNS = {
    "group": "cluster",
    "names": "gene",
    "scores": "score",
    "logfoldchanges": "avg_log2FC",
    "pvals": "p_val",
    "pvals_adj": "p_val_adj",
    "pct_nz_group": "pct_in",
    "pct_nz_reference": "pct_out",
}
logger = logging.getLogger("marrowpy")


def pca(
    adata: AnnData,
    n_comps: int = 50,
    svd_solver: str = "arpack",
    random_state: int = 0,
    copy: bool = True,
) -> AnnData | None:
    """
    PCA of the scaled expression matrix. Saves cell coordinates to ``adata.obsm["X_pca"]``
    and gene loadings to ``adata.varm["PCs"]``. ``n_comps`` is lowered
    to ``min(n_cells, n_genes) - 1`` if needed.

    :param adata: scaled AnnData object
    :type adata: AnnData
    :param n_comps: number of principal components, defaults to 50
    :type n_comps: int, optional
    :param svd_solver: SVD solver passed to ``scanpy.tl.pca``, defaults to "arpack"
    :type svd_solver: str, optional
    :param random_state: random seed of the solver, defaults to 0
    :type random_state: int, optional
    :param copy: if to return a copy with PCA, defaults to True
    :type copy: bool, optional
    """
    max_comps = min(adata.n_obs, adata.n_vars) - 1
    if max_comps < 1:
        raise ValueError(
            f"PCA needs at least 2 cells and 2 genes, got {adata.n_obs} x {adata.n_vars}."
        )
    if n_comps > max_comps:
        logger.warning(
            "n_comps=%i is too large for %i cells x %i genes, using %i",
            n_comps,
            adata.n_obs,
            adata.n_vars,
            max_comps,
        )
        n_comps = max_comps

    adata = adata.copy() if copy else adata
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        zero_center=True,
        svd_solver=svd_solver,
        random_state=random_state,
    )
    return adata if copy else None


def top_loadings(adata: AnnData, n_pcs: int = 5, n_genes: int = 10) -> pd.DataFrame:
    """Genes with the largest positive and negative loadings for the first ``n_pcs`` components."""
    assert "PCs" in adata.varm, "Gene loadings not found in adata.varm['PCs']. First, run tl.pca."

    loadings = adata.varm["PCs"]
    rows = []
    for pc in range(min(n_pcs, loadings.shape[1])):
        order = np.argsort(loadings[:, pc], kind="stable")
        for direction, idx in (
            ("positive", order[::-1][:n_genes]),
            ("negative", order[:n_genes]),
        ):
            for i in idx:
                rows.append(
                    {
                        "pc": pc + 1,
                        "gene": adata.var_names[i],
                        "loading": float(loadings[i, pc]),
                        "direction": direction,
                    }
                )
    return pd.DataFrame(rows, columns=["pc", "gene", "loading", "direction"])


def _cap_neighbors(n_neighbors: int, n_obs: int) -> int:
    cap = min(max(n_obs // 2, 2), n_obs)
    if n_neighbors > cap:
        logger.warning(
            "n_neighbors=%i is too large for %i cells, using %i", n_neighbors, n_obs, cap
        )
        return cap
    return n_neighbors


def _order_by_size(labels: pd.Series) -> pd.Categorical:
    # largest first, ties by the original id
    sizes = labels.astype(str).value_counts()
    order = sorted(sizes.index, key=lambda c: (-sizes[c], int(c) if c.isdigit() else c))
    new_ids = {old: str(i) for i, old in enumerate(order)}
    return pd.Categorical(
        labels.astype(str).map(new_ids), categories=[str(i) for i in range(len(order))]
    )


def _leiden(
    adata: AnnData,
    adjacency,
    resolution: float,
    random_state: int,
    key_added: str,
) -> None:
    kwargs = {}
    if version.parse(sc.__version__) >= LEIDEN_FLAVOR_MIN_VERSION:
        kwargs = dict(flavor="igraph", n_iterations=2, directed=False)

    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        adjacency=adjacency,
        key_added=key_added,
        use_weights=True,
        **kwargs,
    )


def cluster(
    adata: AnnData,
    n_neighbors: int = 20,
    n_pcs: int = 25,
    prune: float = 1 / 15,
    resolution: float = 0.5,
    random_state: int = 0,
    use_rep: str = "X_pca",
    key_added: str = "cluster",
    copy: bool = True,
) -> AnnData | None:
    """
    Builds a shared nearest neighbour (SNN) graph on the first ``n_pcs`` components
    of ``adata.obsm[use_rep]`` and partitions it with Leiden modularity optimization.

    Each cell's neighbourhood is its ``n_neighbors`` nearest cells (itself included),
    edges are weighted by the Jaccard index of the two neighbourhoods and
    edges with weight below ``prune`` are removed.
    Cluster ids written to ``adata.obs[key_added]`` are renumbered by cluster size,
    "0" being the largest, and are only comparable within one run.

    :param adata: AnnData object with ``adata.obsm[use_rep]``
    :type adata: AnnData
    :param n_neighbors: neighbourhood size, capped at half of the number of cells, defaults to 20
    :type n_neighbors: int, optional
    :param n_pcs: number of components to use, defaults to 25
    :type n_pcs: int, optional
    :param prune: minimal Jaccard index for an edge to be kept, defaults to 1/15
    :type prune: float, optional
    :param resolution: higher values give more and smaller clusters, defaults to 0.5
    :type resolution: float, optional
    :param random_state: random seed of Leiden, defaults to 0
    :type random_state: int, optional
    :param use_rep: representation from ``adata.obsm`` to use, defaults to "X_pca"
    :type use_rep: str, optional
    :param key_added: ``adata.obs`` column for cluster ids, defaults to "cluster"
    :type key_added: str, optional
    :param copy: if to return a clustered copy, defaults to True
    :type copy: bool, optional
    """
    assert use_rep in adata.obsm, f"'{use_rep}' not found in adata.obsm. First, run tl.pca."

    adata = adata.copy() if copy else adata

    rep = np.asarray(adata.obsm[use_rep])
    n_pcs = min(n_pcs, rep.shape[1])
    n_neighbors = _cap_neighbors(n_neighbors, adata.n_obs)

    _, snn = _snn_graph(rep[:, :n_pcs], n_neighbors, prune)
    adata.obsp["snn_connectivities"] = snn
    adata.uns["snn"] = {
        "connectivities_key": "snn_connectivities",
        "params": {
            "n_neighbors": n_neighbors,
            "n_pcs": n_pcs,
            "prune": prune,
            "use_rep": use_rep,
        },
    }

    _leiden(adata, snn, resolution, random_state, key_added)
    adata.obs[key_added] = _order_by_size(adata.obs[key_added])
    logger.info(
        "Found %i clusters at resolution %s",
        adata.obs[key_added].nunique(),
        resolution,
    )
    return adata if copy else None


def umap(
    adata: AnnData,
    n_neighbors: int = 30,
    n_pcs: int = 25,
    min_dist: float = 0.3,
    random_state: int = 0,
    use_rep: str = "X_pca",
    copy: bool = True,
) -> AnnData | None:
    """
    2D UMAP embedding of the same representation used for clustering,
    saved to ``adata.obsm["X_umap"]``. Uses its own neighbours graph
    (``adata.uns["umap_neighbors"]``), cluster ids are not affected.
    """
    assert use_rep in adata.obsm, f"'{use_rep}' not found in adata.obsm. First, run tl.pca."

    adata = adata.copy() if copy else adata
    n_pcs = min(n_pcs, adata.obsm[use_rep].shape[1])

    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep=use_rep,
        random_state=random_state,
        key_added="umap_neighbors",
    )
    sc.tl.umap(
        adata,
        min_dist=min_dist,
        random_state=random_state,
        neighbors_key="umap_neighbors",
    )
    return adata if copy else None


def rank_markers(
    adata: AnnData,
    groupby: str = "cluster",
    method: str = "wilcoxon",
    corr_method: str = "benjamini-hochberg",
    min_pct: float = 0.1,
    logfc_threshold: float = 0.25,
    only_pos: bool = True,
    use_raw: bool | None = None,
) -> pd.DataFrame:
    """
    Finds marker genes of each cluster by comparing its cells with all the other cells
    (``scanpy.tl.rank_genes_groups`` with ``reference="rest"``).
    P-values are adjusted within each cluster over all the tested genes.
    ``adata`` itself is not modified.
    Clusters with a single cell are not tested, their cells stay in the "rest".

    Genes detected in less than ``min_pct`` of the cluster's cells
    or with log2 fold change below ``logfc_threshold`` are dropped.

    :param adata: clustered AnnData object, log-normalized expressions are taken from ``adata.raw`` if present
    :type adata: AnnData
    :param groupby: ``adata.obs`` column with cluster ids, defaults to "cluster"
    :type groupby: str, optional
    :param method: statistical test, defaults to "wilcoxon"
    :type method: str, optional
    :param corr_method: "benjamini-hochberg" or "bonferroni", defaults to "benjamini-hochberg"
    :type corr_method: str, optional
    :param min_pct: minimal fraction of cluster's cells expressing a gene, defaults to 0.1
    :type min_pct: float, optional
    :param logfc_threshold: minimal log2 fold change, defaults to 0.25
    :type logfc_threshold: float, optional
    :param only_pos: if to report only up-regulated genes, otherwise ``|avg_log2FC|`` is thresholded, defaults to True
    :type only_pos: bool, optional
    :param use_raw: if to use ``adata.raw``. If None, ``adata.raw`` is used when present, defaults to None
    :type use_raw: bool | None, optional
    :return: marker table with ``gene``, ``cluster``, ``avg_log2FC``, ``pct_in``, ``pct_out``,
        ``p_val``, ``p_val_adj`` and ``score`` columns, sorted by effect size within each cluster
    :rtype: pd.DataFrame
    """
    assert groupby in adata.obs, f"'{groupby}' not found in adata.obs. First, run tl.cluster."

    if use_raw is None:
        use_raw = adata.raw is not None
    n_genes = adata.raw.n_vars if use_raw else adata.n_vars

    # rank sums are undefined for a single cell
    sizes = adata.obs[groupby].astype(str).value_counts()
    groups = [g for g in sizes.index if sizes[g] >= 2]
    skipped = sorted(set(sizes.index) - set(groups))
    if skipped:
        logger.warning(
            "Clusters with a single cell are not tested for markers: %s", ", ".join(skipped)
        )
    if not groups:
        raise ValueError(f"No cluster in '{groupby}' has at least 2 cells.")

    result = sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        groups=groups if skipped else "all",
        reference="rest",
        method=method,
        corr_method=corr_method,
        use_raw=use_raw,
        n_genes=n_genes,
        pts=True,
        copy=True,
    )
    df = sc.get.rank_genes_groups_df(result, group=None).rename(columns=MARKER_COLUMNS)
    if "cluster" not in df.columns:
        # a single compared group comes without the group column
        df.insert(0, "cluster", result.uns["rank_genes_groups"]["names"].dtype.names[0])

    effect = df["avg_log2FC"] if only_pos else df["avg_log2FC"].abs()
    keep = (df["pct_in"] >= min_pct) & (effect >= logfc_threshold)
    df = df[keep].assign(_effect=effect[keep])

    df = df.sort_values(["cluster", "_effect"], ascending=[True, False])
    df = df[["gene", "cluster", "avg_log2FC", "pct_in", "pct_out", "p_val", "p_val_adj", "score"]]

    logger.info(
        "%i marker genes kept for %i clusters", df.shape[0], df["cluster"].nunique()
    )
    return df.reset_index(drop=True)


def significant_markers(markers: pd.DataFrame, max_pval_adj: float = 0.05) -> pd.DataFrame:
    return markers[markers["p_val_adj"] < max_pval_adj].reset_index(drop=True)


def classify_reference(
    adata: AnnData,
    reference: AnnData,
    label_key: str = "label",
    n_genes: int | None = None,
    min_delta: float = 0.05,
    nmads: float | None = 3.0,
    use_raw: bool | None = None,
    key_added: str = "ref_label",
    copy: bool = True,
) -> AnnData | None:
    """
    Reference-based cell type labeling, similar to SingleR.

    1. genes present in both ``adata`` and ``reference`` are kept
    2. mean expression profile of every reference label is computed
    3. for each pair of labels, top ``n_genes`` genes higher in the first label are selected
    4. Spearman correlation of each cell with each label's profile on the selected genes
    5. the best scoring label is assigned, ``delta`` is its margin over the runner-up
    6. assignments with ``delta < min_delta`` or with ``delta`` more than ``nmads``
       MADs below the median ``delta`` of the label are pruned

    Saves labels to ``adata.obs[key_added]``, pruned labels (``"unassigned"``)
    to ``adata.obs[f"{key_added}_pruned"]``, margins to ``adata.obs[f"{key_added}_delta"]``
    and scores to ``adata.obsm[f"{key_added}_scores"]``. Clusters are not touched.

    :param adata: log-normalized query AnnData object
    :type adata: AnnData
    :param reference: log-normalized reference AnnData object with labels in ``reference.obs[label_key]``
    :type reference: AnnData
    :param label_key: ``reference.obs`` column with labels, defaults to "label"
    :type label_key: str, optional
    :param n_genes: number of genes per label pair. If None, ``500 * (2/3) ** log2(n_labels)``, defaults to None
    :type n_genes: int | None, optional
    :param min_delta: minimal margin of the best label over the runner-up, defaults to 0.05
    :type min_delta: float, optional
    :param nmads: number of MADs for outlier pruning within a label, None to skip, defaults to 3.0
    :type nmads: float | None, optional
    :param use_raw: if to use ``adata.raw``. If None, ``adata.raw`` is used when present, defaults to None
    :type use_raw: bool | None, optional
    :param key_added: prefix of output keys, defaults to "ref_label"
    :type key_added: str, optional
    :param copy: if to return a labeled copy, defaults to True
    :type copy: bool, optional
    """
    assert (
        label_key in reference.obs
    ), f"Column '{label_key}' not found in reference.obs"

    if "log1p" not in reference.uns:
        warnings.warn("Gene expressions in reference should be log1p-transformed")

    if use_raw is None:
        use_raw = adata.raw is not None
    X, var_names = _get_matrix(adata, use_raw=use_raw)

    common = reference.var_names[reference.var_names.isin(var_names)]
    if len(common) < 2:
        raise ValueError(
            f"Query and reference share {len(common)} genes, at least 2 are needed. "
            "Check that both use the same gene identifiers."
        )

    labels = reference.obs[label_key].astype(str)
    if labels.nunique() < 2:
        raise ValueError("Reference should contain at least two labels.")

    ref_X = reference[:, common].X
    profiles = _label_profiles(ref_X, labels, common)

    if n_genes is None:
        n_genes = _default_n_marker_genes(profiles.shape[0])
    genes = _classic_markers(profiles, n_genes)
    if len(genes) < 2:
        genes = list(common)
    logger.info(
        "Scoring %i cells against %i labels on %i genes",
        adata.n_obs,
        profiles.shape[0],
        len(genes),
    )

    # [cells, genes]
    X = X[:, var_names.get_indexer(genes)]
    X = X.toarray() if issparse(X) else np.asarray(X)
    # [cells, labels]
    scores = _spearman_scores(X, profiles[genes].to_numpy())

    order = np.argsort(-scores, axis=1, kind="stable")
    cells = np.arange(scores.shape[0])
    delta = scores[cells, order[:, 0]] - scores[cells, order[:, 1]]

    label_names = profiles.index.to_numpy()
    assigned = label_names[order[:, 0]]
    pruned = _prune_assignments(assigned, delta, min_delta, nmads)

    adata = adata.copy() if copy else adata
    adata.obs[key_added] = pd.Categorical(assigned, categories=label_names)
    adata.obs[f"{key_added}_pruned"] = pd.Categorical(
        np.where(pruned, UNASSIGNED, assigned)
    )
    adata.obs[f"{key_added}_delta"] = delta
    adata.obsm[f"{key_added}_scores"] = scores
    adata.uns[key_added] = {
        "labels": label_names.astype(str),
        "genes": np.asarray(genes, dtype=str),
        "label_key": label_key,
        "min_delta": min_delta,
    }
    if nmads is not None:
        adata.uns[key_added]["nmads"] = nmads

    logger.info("%i of %i cell labels pruned", pruned.sum(), adata.n_obs)
    return adata if copy else None


def annotate_clusters(
    adata: AnnData,
    mapping: Mapping[int | str, str],
    cluster_key: str = "cluster",
    key_added: str = "cell_type",
    copy: bool = True,
) -> AnnData | None:
    """
    Names clusters with a manually curated ``{cluster id: cell type}`` mapping.
    Raises ValueError if some cluster is missing from the mapping.
    """
    assert cluster_key in adata.obs, f"'{cluster_key}' not found in adata.obs"

    mapping = {str(k): str(v) for k, v in mapping.items()}
    clusters = adata.obs[cluster_key].astype(str)

    missing = sorted(set(clusters) - set(mapping))
    if missing:
        raise ValueError(f"No cell type given for clusters: {', '.join(missing)}")
    extra = sorted(set(mapping) - set(clusters))
    if extra:
        logger.warning("Mapping has unknown clusters, ignored: %s", ", ".join(extra))

    adata = adata.copy() if copy else adata
    adata.obs[key_added] = pd.Categorical(clusters.map(mapping))
    return adata if copy else None


def crosstab_labels(
    adata: AnnData, cluster_key: str = "cluster", label_key: str = "ref_label_pruned"
) -> pd.DataFrame:
    # cluster x label counts, a cross-check of reference labels against clusters
    return pd.crosstab(adata.obs[cluster_key], adata.obs[label_key])
