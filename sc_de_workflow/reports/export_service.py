from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Mapping, Optional

import pandas as pd
import plotly.graph_objs as go

from sc_de_workflow.core.dataset import Dataset
from sc_de_workflow.reports.model import FigureMetadata
from sc_de_workflow.views.plot_state import PlotState
from sc_de_workflow.views.view_registry import ViewRegistry

logger = logging.getLogger(__name__)


class ExportService:
    """
    Responsible for:
    - turning figure metadata into a Plotly figure
    - writing figures out as standalone HTML files
    """

    def __init__(
            self,
            *,
            datasets_by_key: Dict[str, Dataset],
            view_registry: ViewRegistry,
            output_root: Path,
            tables: Optional[Mapping[str, pd.DataFrame]] = None,
    ) -> None:
        self._datasets_by_key = datasets_by_key
        self._view_registry = view_registry
        self._output_root = Path(output_root)
        self._tables = tables or {}

    def _get_dataset(self, key: str) -> Dataset:
        try:
            return self._datasets_by_key[key]
        except KeyError:
            raise KeyError(f"Dataset with key {key} not found")

    def render_figure(self, metadata: FigureMetadata) -> go.Figure:
        """
        Render figure based on figure metadata
        :param metadata: the figure metadata instance
        :return: a plotly figure
        """
        ds = self._get_dataset(metadata.dataset_key)
        view = self._view_registry.create(metadata.view_id, ds, self._tables)

        state = metadata.plot_state
        if isinstance(state, dict):
            state = PlotState.from_dict(state)

        data = view.compute_data(state)
        return view.render_figure(data, state)

    def export_single(self, metadata: FigureMetadata) -> Path:
        """
        Render the figure and write it to <output_root>/<file_stem>.html
        :param metadata: the figure metadata instance
        :return: the path to the exported file
        """
        figure = self.render_figure(metadata)

        self._output_root.mkdir(parents=True, exist_ok=True)
        out_path = self._output_root / f"{metadata.stem}.html"

        figure.write_html(str(out_path), include_plotlyjs="cdn", full_html=True)
        logger.info(
            "Exported figure",
            extra={"figure_id": metadata.id, "view_id": metadata.view_id, "path": str(out_path)},
        )
        return out_path
