import numpy as np
import pandas as pd
import pytest

from sklearn.metrics import adjusted_rand_score

import marrowpy as mp
from prepare_test_sample import (
    log_normalized,
    reference_from,
    same_partition,
    simulate_counts,
    toy_blocks,
)


def _preprocessed(adata, n_top_genes=2000):
    adata = mp.pp.filter_qc(adata)
    adata = mp.pp.normalize(adata)
    adata = mp.pp.select_features(adata, n_top_genes=n_top_genes)
    return mp.pp.scale(adata)


class TestToyBlocks:
    """Two well separated expression blocks with default parameters."""

    def run_toy(self):
        adata = _preprocessed(toy_blocks())
        adata = mp.tl.pca(adata)
        return mp.tl.cluster(adata)

    def test_two_clusters(self):
        adata = self.run_toy()
        clusters = adata.obs["cluster"].astype(str)

        assert clusters.nunique() == 2
        assert clusters.iloc[:3].nunique() == 1
        assert clusters.iloc[3:].nunique() == 1
        assert clusters.iloc[0] != clusters.iloc[3]

    def test_markers(self):
        adata = self.run_toy()
        markers = mp.tl.rank_markers(adata)

        first = adata.obs["cluster"].astype(str).iloc[0]
        second = adata.obs["cluster"].astype(str).iloc[3]
        top_first = markers[markers["cluster"].astype(str) == first]["gene"].head(5)
        top_second = markers[markers["cluster"].astype(str) == second]["gene"].head(5)

        assert set(top_first) == {f"gene{i}" for i in range(1, 6)}
        assert set(top_second) == {f"gene{i}" for i in range(6, 11)}

    def test_pca_components_clamped(self):
        adata = mp.tl.pca(_preprocessed(toy_blocks()), n_comps=50)
        assert adata.obsm["X_pca"].shape == (6, 5)
        assert adata.varm["PCs"].shape == (10, 5)


class TestTools:
    seed = 0

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def pca(self, seed=0):
        adata = _preprocessed(simulate_counts(), n_top_genes=100)
        return mp.tl.pca(adata, n_comps=20, random_state=seed)

    def test_pca_reproducible(self):
        first = self.pca()
        second = self.pca()
        self.assert_equals(first.obsm["X_pca"], second.obsm["X_pca"], 1e-6)
        assert first.obsm["X_pca"].shape == (first.n_obs, 20)

    def test_top_loadings(self):
        adata = self.pca()
        loadings = mp.tl.top_loadings(adata, n_pcs=3, n_genes=4)

        assert list(loadings.columns) == ["pc", "gene", "loading", "direction"]
        assert loadings.shape[0] == 3 * 2 * 4
        positive = loadings[(loadings["pc"] == 1) & (loadings["direction"] == "positive")]
        assert (np.diff(positive["loading"].to_numpy()) <= 0).all()

    def test_cluster_recovers_groups(self):
        adata = mp.tl.cluster(self.pca(), n_neighbors=15, n_pcs=10)

        assert adata.obs["cluster"].dtype.name == "category"
        assert "snn_connectivities" in adata.obsp
        assert adjusted_rand_score(adata.obs["group"], adata.obs["cluster"]) > 0.9

    def test_cluster_reproducible(self):
        adata = self.pca()
        first = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10, random_state=self.seed)
        second = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10, random_state=self.seed)
        assert same_partition(first.obs["cluster"], second.obs["cluster"])

    def test_snn_graph_symmetric_and_pruned(self):
        adata = mp.tl.cluster(self.pca(), n_neighbors=15, n_pcs=10, prune=0.2)
        snn = adata.obsp["snn_connectivities"]

        assert abs(snn - snn.T).max() < 1e-12
        assert snn.diagonal().sum() == 0
        assert snn.data.min() >= 0.2
        assert snn.data.max() <= 1.0

    def test_resolution(self):
        adata = self.pca()
        coarse = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10, resolution=0.1)
        fine = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10, resolution=3.0)
        assert fine.obs["cluster"].nunique() >= coarse.obs["cluster"].nunique()

    def test_ids_ordered_by_size(self):
        adata = simulate_counts(n_cells_per_group=60)
        # 15 cells of the first population, 60 of the others
        adata = adata[45:].copy()
        adata = mp.tl.pca(_preprocessed(adata, n_top_genes=100), n_comps=20)
        clustered = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10)

        sizes = clustered.obs["cluster"].value_counts(sort=False)
        assert list(sizes.index) == [str(i) for i in range(len(sizes))]
        assert (np.diff(sizes.to_numpy()) <= 0).all()
        smallest = clustered.obs.loc[clustered.obs["cluster"] == sizes.index[-1], "group"]
        assert (smallest == "g0").all()

    def test_cluster_needs_pca(self):
        adata = _preprocessed(simulate_counts(), n_top_genes=100)
        with pytest.raises(AssertionError, match="tl.pca"):
            mp.tl.cluster(adata)

    def test_umap(self):
        clustered = mp.tl.cluster(self.pca(), n_neighbors=15, n_pcs=10)
        embedded = mp.tl.umap(clustered, n_neighbors=15, n_pcs=10)

        assert embedded.obsm["X_umap"].shape == (clustered.n_obs, 2)
        assert np.isfinite(embedded.obsm["X_umap"]).all()
        assert (embedded.obs["cluster"] == clustered.obs["cluster"]).all()
        assert "X_umap" not in clustered.obsm


class TestMarkers:
    min_pct = 0.5

    def markers(self, **kwargs):
        adata = mp.tl.pca(_preprocessed(simulate_counts(), n_top_genes=100), n_comps=20)
        adata = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10)
        return adata, mp.tl.rank_markers(adata, **kwargs)

    def test_columns_and_thresholds(self):
        adata, markers = self.markers(min_pct=self.min_pct, logfc_threshold=0.5)

        assert list(markers.columns) == [
            "gene",
            "cluster",
            "avg_log2FC",
            "pct_in",
            "pct_out",
            "p_val",
            "p_val_adj",
            "score",
        ]
        assert (markers["pct_in"] >= self.min_pct).all()
        assert (markers["avg_log2FC"] >= 0.5).all()
        assert set(markers["gene"]) <= set(adata.raw.var_names)
        assert "rank_genes_groups" not in adata.uns

    def test_sorted_by_effect_within_cluster(self):
        _, markers = self.markers()
        for _, table in markers.groupby("cluster", observed=True):
            assert (np.diff(table["avg_log2FC"].to_numpy()) <= 0).all()

    def test_marker_genes_found(self):
        adata, markers = self.markers()
        for cluster, table in markers.groupby("cluster", observed=True):
            group = adata.obs.loc[adata.obs["cluster"] == cluster, "group"].mode()[0]
            g = int(group[1:])
            expected = {f"GENE{i:03d}" for i in range(g * 15, (g + 1) * 15)}
            top = table.sort_values("score", ascending=False)["gene"].head(10)
            assert set(top) <= expected

    def test_single_cell_cluster_skipped(self, caplog):
        adata, _ = self.markers()
        adata.obs["cluster"] = adata.obs["cluster"].cat.add_categories("lonely")
        adata.obs.loc[adata.obs_names[0], "cluster"] = "lonely"

        with caplog.at_level("WARNING", logger="marrowpy"):
            markers = mp.tl.rank_markers(adata)

        assert "lonely" not in set(markers["cluster"].astype(str))
        assert markers["cluster"].nunique() >= 2
        assert "lonely" in caplog.text

    def test_significant_markers(self):
        _, markers = self.markers()
        significant = mp.tl.significant_markers(markers, max_pval_adj=0.01)
        assert (significant["p_val_adj"] < 0.01).all()
        assert significant.shape[0] <= markers.shape[0]

    def test_both_directions(self):
        _, markers = self.markers(only_pos=False)
        assert (markers["avg_log2FC"] < 0).any()
        assert (markers["avg_log2FC"].abs() >= 0.25).all()


class TestReferenceClassifier:
    def query_and_reference(self):
        reference = reference_from(simulate_counts(seed=1))
        query = log_normalized(simulate_counts(seed=2))
        return query, reference

    def test_labels_match_groups(self):
        query, reference = self.query_and_reference()
        labeled = mp.tl.classify_reference(query, reference)

        accuracy = (labeled.obs["ref_label"].astype(str) == labeled.obs["group"].astype(str)).mean()
        assert accuracy > 0.95
        assert labeled.obsm["ref_label_scores"].shape == (query.n_obs, 3)
        assert (labeled.obs["ref_label_delta"] >= 0).all()
        assert "ref_label" not in query.obs

    def test_pruned_labels(self):
        query, reference = self.query_and_reference()
        labeled = mp.tl.classify_reference(query, reference, min_delta=10.0)
        assert (labeled.obs["ref_label_pruned"] == mp.tl.UNASSIGNED).all()
        assert labeled.obs["ref_label"].notna().all()

    def test_no_common_genes(self):
        query, reference = self.query_and_reference()
        query.var_names = [f"OTHER{i}" for i in range(query.n_vars)]
        with pytest.raises(ValueError, match="share 0 genes"):
            mp.tl.classify_reference(query, reference)

    def test_single_label(self):
        query, reference = self.query_and_reference()
        reference.obs["label"] = "only"
        with pytest.raises(ValueError, match="two labels"):
            mp.tl.classify_reference(query, reference)

    def test_clusters_untouched(self):
        adata = mp.tl.pca(_preprocessed(simulate_counts(seed=2), n_top_genes=100), n_comps=20)
        adata = mp.tl.cluster(adata, n_neighbors=15, n_pcs=10)
        reference = reference_from(simulate_counts(seed=1))

        labeled = mp.tl.classify_reference(adata, reference)
        assert (labeled.obs["cluster"] == adata.obs["cluster"]).all()

        table = mp.tl.crosstab_labels(labeled, "cluster", "ref_label")
        assert table.to_numpy().sum() == adata.n_obs


class TestAnnotateClusters:
    def clustered(self):
        adata = mp.tl.pca(_preprocessed(toy_blocks()))
        return mp.tl.cluster(adata)

    def test_mapping(self):
        adata = self.clustered()
        labeled = mp.tl.annotate_clusters(adata, {0: "B cells", 1: "T cells"})

        expected = adata.obs["cluster"].astype(str).map({"0": "B cells", "1": "T cells"})
        assert (labeled.obs["cell_type"].astype(str) == expected).all()

    def test_many_to_one(self):
        adata = self.clustered()
        labeled = mp.tl.annotate_clusters(adata, {"0": "Monocytes", "1": "Monocytes"})
        assert (labeled.obs["cell_type"] == "Monocytes").all()

    def test_missing_cluster(self):
        adata = self.clustered()
        with pytest.raises(ValueError, match="No cell type given for clusters: 1"):
            mp.tl.annotate_clusters(adata, {0: "B cells", 7: "T cells"})


def test_prune_assignments():
    from marrowpy._utils import _prune_assignments

    labels = np.array(["a"] * 6 + ["b"] * 2)
    delta = np.array([0.30, 0.31, 0.29, 0.30, 0.32, 0.06, 0.01, 0.2])
    pruned = _prune_assignments(labels, delta, min_delta=0.05, nmads=3.0)

    assert pruned.tolist() == [False, False, False, False, False, True, True, False]
    assert _prune_assignments(labels, delta, 0.05, None).tolist() == (delta < 0.05).tolist()


def test_spearman_scores():
    from marrowpy._utils import _spearman_scores

    X = np.array([[1.0, 2.0, 3.0], [3.0, 2.0, 1.0], [1.0, 1.0, 1.0]])
    profiles = np.array([[10.0, 20.0, 30.0]])
    scores = _spearman_scores(X, profiles)

    assert np.allclose(scores[:, 0], [1.0, -1.0, 0.0])
    assert isinstance(scores, np.ndarray)
    assert not pd.isna(scores).any()


def test_get_matrix():
    from marrowpy._utils import _get_matrix

    adata = _preprocessed(simulate_counts(), n_top_genes=50)
    X, var_names = _get_matrix(adata)
    assert X.shape == (adata.n_obs, 50)
    assert list(var_names) == list(adata.var_names)

    X, var_names = _get_matrix(adata, use_raw=True)
    assert X.shape == (adata.n_obs, adata.raw.n_vars)

    adata.raw = None
    with pytest.raises(AssertionError, match="adata.raw"):
        _get_matrix(adata, use_raw=True)
