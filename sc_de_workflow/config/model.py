from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ObsColumns:
    """
    Semantic names for `.obs` columns used by the workflow.

    All fields are optional so that datasets without explicit obs_columns
    config still parse. Analysis steps check for the columns they need.
    """

    cell_id: Optional[str] = None
    cluster: Optional[str] = None
    block: Optional[str] = None
    condition: Optional[str] = None
    sample: Optional[str] = None
    cell_type: Optional[str] = None


@dataclass
class DatasetConfig:
    """
    Parsed config entry for a single dataset.
    """

    raw: Dict[str, Any]
    source_path: Path
    index: int

    @property
    def name(self) -> str:
        return self.raw.get("name", f"Dataset {self.index}")

    @property
    def path(self) -> Path:
        """
        Return the .h5ad path for this dataset.

        Accepts "path" and the older "file" key.
        """
        raw_path = self.raw.get("path") or self.raw.get("file")
        if raw_path is None:
            raise KeyError(f"No 'path' or 'file' in dataset config: {self.raw}")
        return Path(raw_path)

    @property
    def obs_columns(self) -> ObsColumns:
        """
        Return semantic obs column mapping as an ObsColumns instance.

        If 'obs_columns' is missing or partial, unspecified fields default to None.
        """
        raw_cols = self.raw.get("obs_columns", {})
        return ObsColumns(**raw_cols)

    @property
    def counts_layer(self) -> Optional[str]:
        return self.raw.get("counts_layer", "counts")

    @classmethod
    def from_raw(
        cls, raw: Dict[str, Any], source_path: Path, index: int
    ) -> DatasetConfig:
        return cls(raw=raw, source_path=source_path, index=index)


@dataclass(frozen=True)
class WorkflowConfig:
    """
    Parameter choices for the DE demonstration workflow.

    Column fields hold *semantic* names ("cluster", "block", ...) which are
    resolved against a dataset's ObsColumns; a literal obs column name also works.
    """

    groupby: str = "cluster"
    block: Optional[str] = "block"
    condition: Optional[str] = "condition"
    sample: Optional[str] = "sample"

    pval_type: str = "any"
    direction: str = "any"
    lfc: float = 0.0
    top_n: int = 10

    # pseudo-bulk
    min_cells: int = 10
    min_cpm: float = 1.0
    contrast: Optional[Tuple[str, str]] = None
    dispersion: Any = "moments"

    counts_layer: str = "counts"
    logcounts_layer: str = "logcounts"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> WorkflowConfig:
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            from sc_de_workflow.core.exceptions import ConfigError

            raise ConfigError(f"Unknown workflow option(s): {unknown}")

        contrast = data.get("contrast")
        if contrast is not None:
            if len(contrast) != 2:
                from sc_de_workflow.core.exceptions import ConfigError

                raise ConfigError(
                    f"workflow.contrast must name exactly two condition levels, got {contrast!r}"
                )
            data["contrast"] = (str(contrast[0]), str(contrast[1]))

        return cls(**data)


@dataclass
class GlobalConfig:
    title: str
    datasets: List[DatasetConfig]
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    data_root: Optional[Path] = None
    vignette_dir: Optional[Path] = None
    output_dir: Optional[Path] = None
