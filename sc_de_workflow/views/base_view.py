from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import pandas as pd
import plotly.graph_objs as go

from sc_de_workflow.core.dataset import Dataset
from sc_de_workflow.views.plot_state import PlotState


class BaseView(ABC):
    """
    Abstract base class for all plot views.

    Defines the contract that every view must follow
    - expose an 'id' - used in figure metadata and the registry
    - expose a 'label' - used for captions
    - implement 'compute_data' - derive the plotting data from the dataset / workflow tables
    - implement 'render_figure' - build the Plotly figure
    """

    id: str = None
    label: str = None

    def __init__(self, dataset: Dataset, tables: Optional[Mapping[str, pd.DataFrame]] = None):
        self.dataset = dataset
        self.tables = dict(tables or {})

    @abstractmethod
    def compute_data(self, state: PlotState) -> Any:
        """
        Compute the data for the given PlotState
        :param state: what to draw
        :return: data: a dataframe ready for render_figure
        """
        raise NotImplementedError()

    @abstractmethod
    def render_figure(self, data: Any, state: PlotState) -> go.Figure:
        """
        Render the figure given the computed data
        :param data: the data provided by compute_data()
        :param state: what to draw
        :return: the Plotly figure for these parameters
        """
        raise NotImplementedError()

    # ------------------------------------------------------------------
    # Common helpers for all views
    # ------------------------------------------------------------------
    def table(self, state: PlotState) -> pd.DataFrame:
        """Return the workflow table named in the state, or an empty frame."""
        if state.table is None:
            return pd.DataFrame()
        return self.tables.get(state.table, pd.DataFrame())

    def figure(self, state: PlotState) -> go.Figure:
        return self.render_figure(self.compute_data(state), state)

    @staticmethod
    def empty_figure(message: str) -> go.Figure:
        """
        Standardised 'no data' figure used by all views.
        """
        fig = go.Figure()
        fig.update_layout(
            title=message,
            xaxis={"visible": False},
            yaxis={"visible": False},
        )
        return fig
