# pylint: disable=E1123, W0621, C0116, W0511
from __future__ import annotations

import argparse
import logging

from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd
from anndata import AnnData

from . import preprocessing as pp
from . import tools as tl
from .config import PipelineConfig, load_pipeline_config
from .io import read_counts, read_reference, write_markers


logger = logging.getLogger("marrowpy")


@dataclass
class PipelineResult:
    """Final dataset, marker tables and, if requested, the output of every stage."""

    adata: AnnData
    markers: pd.DataFrame
    significant_markers: pd.DataFrame
    stages: dict[str, AnnData] = field(default_factory=dict)


def run_pipeline(
    adata: AnnData,
    config: PipelineConfig | None = None,
    reference: AnnData | None = None,
    keep_stages: bool = False,
) -> PipelineResult:
    """
    1. QC filtering
    2. log(CP10K + 1) library size normalization
    3. highly variable genes (vst)
    4. scaling of the genes to have mean 0 and variance 1
    5. PCA
    6. Harmony, if a batch key is configured
    7. SNN graph + Leiden clustering
    8. UMAP
    9. marker genes of each cluster
    10. reference-based labels, if ``reference`` is given
    11. manually curated cell type names, if configured

    Every stage returns a new AnnData object, ``adata`` is not modified.
    """
    config = config or PipelineConfig()
    seed = config.seed
    stages = {}

    def _done(name: str, result: AnnData) -> AnnData:
        if keep_stages:
            stages[name] = result
        return result

    adata = _done("filter", pp.filter_qc(adata, **config.filter))
    adata = _done("normalize", pp.normalize(adata, **config.normalize))
    adata = _done("features", pp.select_features(adata, **config.features))
    adata = _done("scale", pp.scale(adata, **config.scale))
    adata = _done("pca", tl.pca(adata, random_state=seed, **config.pca))

    use_rep = "X_pca"
    if config.harmony:
        harmony_kwargs = dict(config.harmony)
        key = harmony_kwargs.pop("key")
        adata = _done(
            "harmony",
            pp.harmony_integrate(adata, key=key, random_state=seed, **harmony_kwargs),
        )
        use_rep = adata.uns["harmony"]["adjusted_basis"]

    adata = _done(
        "cluster", tl.cluster(adata, use_rep=use_rep, random_state=seed, **config.cluster)
    )
    adata = _done(
        "umap", tl.umap(adata, use_rep=use_rep, random_state=seed, **config.umap)
    )

    cluster_key = config.cluster.get("key_added", "cluster")
    markers = tl.rank_markers(adata, groupby=cluster_key, **config.markers)
    max_pval_adj = config.export.get("max_pval_adj")
    significant = (
        markers if max_pval_adj is None else tl.significant_markers(markers, max_pval_adj)
    )

    if reference is not None:
        reference_kwargs = {k: v for k, v in config.reference.items() if k != "path"}
        adata = _done(
            "reference", tl.classify_reference(adata, reference, **reference_kwargs)
        )

    if config.cell_types:
        adata = _done(
            "cell_types",
            tl.annotate_clusters(adata, config.cell_types, cluster_key=cluster_key),
        )

    logger.info(
        "Pipeline finished: %i cells, %i clusters, %i significant markers",
        adata.n_obs,
        adata.obs[cluster_key].nunique(),
        significant.shape[0],
    )
    return PipelineResult(
        adata=adata, markers=markers, significant_markers=significant, stages=stages
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="marrowpy",
        description="QC, clustering and marker detection of a scRNA-seq count matrix.",
    )
    parser.add_argument("counts", help="count matrix: 10x directory, .mtx, .h5ad, .csv or .tsv")
    parser.add_argument("--config", default=None, help="pipeline config (.json)")
    parser.add_argument("--reference", default=None, help="labeled reference atlas (.h5ad)")
    parser.add_argument("--out", default="results", help="output directory")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    config = load_pipeline_config(args.config) if args.config else PipelineConfig()
    adata = read_counts(args.counts, **config.input)

    reference = None
    reference_path = args.reference or config.reference.get("path")
    if reference_path:
        reference = read_reference(
            reference_path, label_key=config.reference.get("label_key", "label")
        )

    result = run_pipeline(adata, config, reference=reference)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    result.adata.write_h5ad(out / "dataset.h5ad")
    write_markers(
        result.markers,
        out / config.export.get("filename", "markers.csv"),
        sep=config.export.get("sep"),
        max_pval_adj=config.export.get("max_pval_adj"),
    )

    if reference is not None:
        label_key = config.reference.get("key_added", "ref_label") + "_pruned"
        cluster_key = config.cluster.get("key_added", "cluster")
        tl.crosstab_labels(result.adata, cluster_key, label_key).to_csv(
            out / "clusters_vs_reference.csv"
        )

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
