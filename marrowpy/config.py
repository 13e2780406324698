"""Configuration of the analysis pipeline, loaded from JSON files."""

from __future__ import annotations

import inspect
import json

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

from . import preprocessing as pp
from . import tools as tl


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load a config from a JSON file, the root should be an object."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


def _params(func: Callable, exclude: tuple[str, ...] = ()) -> set[str]:
    skip = {"adata", "copy", "random_state", *exclude}
    return {
        name
        for name, p in inspect.signature(func).parameters.items()
        if name not in skip and p.kind is not inspect.Parameter.VAR_KEYWORD
    }


# allowed keys of each section, None for free-form sections
SECTION_KEYS: dict[str, set[str] | None] = {
    "input": {"gene_name_sep", "genes_path", "barcodes_path"},
    "filter": _params(pp.filter_qc),
    "normalize": _params(pp.normalize),
    "features": _params(pp.select_features),
    "scale": _params(pp.scale),
    "pca": _params(tl.pca),
    "harmony": None,
    "cluster": _params(tl.cluster, exclude=("use_rep",)),
    "umap": _params(tl.umap, exclude=("use_rep",)),
    "markers": _params(tl.rank_markers, exclude=("groupby",)),
    "reference": {"path"} | _params(tl.classify_reference, exclude=("reference",)),
    "export": {"filename", "sep", "max_pval_adj"},
    "cell_types": None,
}


@dataclass(frozen=True)
class PipelineConfig:
    """
    Parameters of every pipeline stage. Each section is passed as keyword
    arguments to the corresponding stage function; ``seed`` is used by
    every randomized stage (PCA, Harmony, Leiden, UMAP).
    """

    input: dict[str, Any] = field(default_factory=dict)
    filter: dict[str, Any] = field(default_factory=dict)
    normalize: dict[str, Any] = field(default_factory=dict)
    features: dict[str, Any] = field(default_factory=dict)
    scale: dict[str, Any] = field(default_factory=dict)
    pca: dict[str, Any] = field(default_factory=dict)
    harmony: dict[str, Any] = field(default_factory=dict)
    cluster: dict[str, Any] = field(default_factory=dict)
    umap: dict[str, Any] = field(default_factory=dict)
    markers: dict[str, Any] = field(default_factory=dict)
    reference: dict[str, Any] = field(default_factory=dict)
    export: dict[str, Any] = field(default_factory=lambda: {"max_pval_adj": 0.05})
    cell_types: dict[str, str] = field(default_factory=dict)
    seed: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config sections: {', '.join(unknown)}")

        for section, keys in SECTION_KEYS.items():
            value = data.get(section, {})
            if not isinstance(value, dict):
                raise ValueError(
                    f"Config section '{section}' should be an object, got {type(value).__name__}."
                )
            if keys is None:
                continue
            bad = sorted(set(value) - keys)
            if bad:
                raise ValueError(
                    f"Unknown keys in config section '{section}': {', '.join(bad)}"
                )

        if data.get("harmony") and "key" not in data["harmony"]:
            raise ValueError("Config section 'harmony' should name the batch 'key'.")
        if not isinstance(data.get("seed", 0), int):
            raise ValueError("Config 'seed' should be an integer.")

        return cls(**data)


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    return PipelineConfig.from_dict(load_json_config(path))
