"""
Exploratory scRNA-seq analysis of a bone marrow count matrix:

1. Loading:
    - gene by cell sparse count matrix, gene identifiers truncated and made unique
2. QC:
    - drop genes detected in too few cells and cells with too few genes
    - per cell total counts, detected genes and mitochondrial percent
    - drop cells outside the detected genes band or with high mitochondrial percent
3. Preprocessing:
    - log(CP10K + 1) library size normalization of the cells
    - top g variable genes by the variance stabilizing transform (VST) method (as in Seurat)
    - scaling of the genes to have mean 0 and variance 1
    - PCA (by default, d=50) saving the gene loadings
    - Harmony, only if cells come from several batches
4. Clustering:
    - shared nearest neighbour graph on the first 25 PCs
    - Leiden modularity optimization (resolution 0.5)
    - UMAP for visualization only
5. Annotation:
    - one vs rest marker genes of each cluster (Wilcoxon test)
    - reference-based labels by correlation to a labeled atlas (as in SingleR)
    - manually curated cluster names

Randomized steps take an explicit seed so that the whole analysis is reproducible.
"""

from . import preprocessing as pp
from . import tools as tl
from . import io
from .config import PipelineConfig, load_pipeline_config
from .main import PipelineResult, run_pipeline
