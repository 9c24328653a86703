from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from sc_de_workflow.core.dataset import Dataset
from sc_de_workflow.views.plot_state import PlotState

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """Return a current UTC timestamp in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


# -------------------------------------------------------------------------
# Per-figure metadata
# -------------------------------------------------------------------------

@dataclass
class FigureMetadata:
    """
    Description of a single figure produced by the workflow.

    - id: identifier used by vignettes (`figure("volcano-pseudobulk")`)
    - dataset_key: name of the Dataset the figure is drawn from
    - view_id: BaseView.id ("volcano", "marker_heatmap", "expression")
    - plot_state: serialized PlotState (as dict)
    - label: caption shown under the figure
    - file_stem: base filename used when exporting HTML
    - created_at: ISO8601 timestamp (UTC)
    """

    id: str
    dataset_key: str
    view_id: str
    plot_state: Dict[str, Any]

    label: Optional[str] = None
    file_stem: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_state(
        cls,
        *,
        figure_id: str,
        dataset_key: str,
        view_id: str,
        state: PlotState,
        label: Optional[str] = None,
        file_stem: Optional[str] = None,
    ) -> "FigureMetadata":
        return cls(
            id=figure_id,
            dataset_key=dataset_key,
            view_id=view_id,
            plot_state=state.to_dict(),
            label=label,
            file_stem=file_stem,
        )

    @property
    def stem(self) -> str:
        return self.file_stem or f"{self.dataset_key}.{self.view_id}_{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------------------------------------------------------------
# Workflow output bundle
# -------------------------------------------------------------------------

@dataclass
class WorkflowResults:
    """
    Named result tables plus figure descriptions for one dataset.

    Tables are keyed by names such as "markers_t_blocked.1" or
    "pseudobulk.1"; figures reference tables by the same names.
    """

    dataset: Dataset
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    figures: List[FigureMetadata] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    @property
    def dataset_key(self) -> str:
        return self.dataset.name

    def add_table(self, name: str, table: pd.DataFrame) -> None:
        if name in self.tables:
            logger.warning("Overwriting result table", extra={"table": name})
        self.tables[name] = table

    def add_figure(self, metadata: FigureMetadata) -> None:
        if self.get_figure(metadata.id) is not None:
            raise ValueError(f"Figure '{metadata.id}' already exists")
        self.figures.append(metadata)

    def get_figure(self, figure_id: str) -> Optional[FigureMetadata]:
        return next((f for f in self.figures if f.id == figure_id), None)

    def write_tables(self, output_dir: Path) -> List[Path]:
        """
        Write every table as CSV to <output_dir>/tables/<name>.csv
        """
        table_dir = Path(output_dir) / "tables"
        table_dir.mkdir(parents=True, exist_ok=True)

        paths = []
        for name, table in self.tables.items():
            path = table_dir / f"{name}.csv"
            table.to_csv(path)
            paths.append(path)

        logger.info(
            "Wrote result tables",
            extra={"dataset": self.dataset_key, "n_tables": len(paths), "dir": str(table_dir)},
        )
        return paths

    def fingerprint(self) -> str:
        """Content hash of the tables and figure descriptions; timestamps are ignored."""
        digest = hashlib.sha256(self.dataset_key.encode())
        for name in sorted(self.tables):
            table = self.tables[name]
            digest.update(name.encode())
            digest.update(json.dumps([str(c) for c in table.columns]).encode())
            digest.update(pd.util.hash_pandas_object(table, index=True).to_numpy().tobytes())

        for metadata in sorted(self.figures, key=lambda m: m.id):
            described = metadata.to_dict()
            described.pop("created_at")
            digest.update(json.dumps(described, sort_keys=True, default=str).encode())

        return digest.hexdigest()
