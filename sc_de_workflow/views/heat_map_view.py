from __future__ import annotations

from typing import List

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from sc_de_workflow.views.base_view import BaseView
from sc_de_workflow.views.plot_state import PlotState


class MarkerHeatmapView(BaseView):
    """
    Heatmap of the per-comparison effect sizes (logFC or AUC) of a marker table,
    genes × other groups, for the top genes of one group.
    """

    id = "marker_heatmap"
    label = "Marker heatmap"

    def compute_data(self, state: PlotState) -> pd.DataFrame:
        table = self.table(state)
        if table.empty:
            return pd.DataFrame()

        summary = next((c for c in table.columns if c.startswith("summary_")), None)
        if summary is None:
            return pd.DataFrame()
        effect = summary[len("summary_"):]

        effect_cols = [c for c in table.columns if c.startswith(f"{effect}.")]
        if not effect_cols:
            return pd.DataFrame()

        if state.genes:
            genes: List[str] = [g for g in state.genes if g in table.index]
        else:
            genes = [str(g) for g in table.index[: state.n_genes]]
        if not genes:
            return pd.DataFrame()

        wide = table.loc[genes, effect_cols].copy()
        wide.columns = [c[len(effect) + 1:] for c in effect_cols]
        wide.index.name = "gene"

        long_df = (
            wide.reset_index()
            .melt(id_vars="gene", var_name="comparison", value_name="effect")
        )

        # Keep the ranked gene order
        long_df["gene"] = pd.Categorical(long_df["gene"], categories=genes, ordered=True)
        long_df.attrs["effect"] = effect
        return long_df

    def render_figure(self, data: pd.DataFrame, state: PlotState) -> go.Figure:

        if data is None or data.empty:
            return self.empty_figure("No data to show")

        effect = data.attrs.get("effect", "logFC")
        pivot = data.pivot(index="gene", columns="comparison", values="effect")
        pivot.index = pivot.index.astype(str)

        heatmap_kwargs = {}
        if effect == "AUC":
            heatmap_kwargs = {"zmin": 0.0, "zmax": 1.0}
        else:
            bound = float(pivot.abs().max().max() or 1.0)
            heatmap_kwargs = {"zmin": -bound, "zmax": bound}

        fig = px.imshow(
            pivot,
            color_continuous_scale=state.color_scale,
            aspect="auto",
            labels=dict(x="Compared against", y="Gene", color=effect),
            **heatmap_kwargs,
        )

        fig.update_xaxes(side="top")
        fig.update_layout(
            height=max(400, 22 * pivot.shape[0]),
            margin=dict(l=40, r=40, b=40, t=60),
            title=state.title or "",
        )

        return fig
