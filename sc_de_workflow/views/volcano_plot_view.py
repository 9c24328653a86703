from __future__ import annotations

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from sc_de_workflow.views.base_view import BaseView
from sc_de_workflow.views.plot_state import PlotState

# column names used by the different result tables -> canonical name
_LFC_COLUMNS = ("logFC", "log2FC")
_PVALUE_COLUMNS = ("PValue", "p_value", "pvalue")
_ADJ_COLUMNS = ("FDR", "adj_pvalue")


def _first_present(df: pd.DataFrame, candidates) -> str | None:
    return next((c for c in candidates if c in df.columns), None)


class VolcanoPlotView(BaseView):
    """
    Volcano plot for a DE table.

    X: log2 fold change
    Y: -log10(p-value)
    Colour: up / down / not significant (by FDR when available)
    """

    id = "volcano"
    label = "Volcano"

    def compute_data(self, state: PlotState) -> pd.DataFrame:
        table = self.table(state)
        if table.empty:
            return pd.DataFrame()

        lfc_col = _first_present(table, _LFC_COLUMNS)
        p_col = _first_present(table, _PVALUE_COLUMNS)
        if lfc_col is None or p_col is None:
            return pd.DataFrame()
        adj_col = _first_present(table, _ADJ_COLUMNS) or p_col

        genes = table["gene"] if "gene" in table.columns else table.index.to_series()
        df = pd.DataFrame(
            {
                "gene": genes.astype(str).to_numpy(),
                "log2FC": table[lfc_col].astype(float).to_numpy(),
                "pvalue": table[p_col].astype(float).to_numpy(),
                "adj_pvalue": table[adj_col].astype(float).to_numpy(),
            }
        ).dropna(subset=["log2FC", "pvalue"])

        if df.empty:
            return df

        # Avoid log10(0) -> inf
        p = df["pvalue"].clip(lower=np.finfo(float).tiny)
        df["neg_log10_pvalue"] = -np.log10(p)

        df["significance"] = "Not Significant"
        sig_mask = df["adj_pvalue"] <= state.pval_threshold
        up_mask = (df["log2FC"] >= state.lfc_threshold) & sig_mask
        down_mask = (df["log2FC"] <= -state.lfc_threshold) & sig_mask

        df.loc[up_mask, "significance"] = "Upregulated"
        df.loc[down_mask, "significance"] = "Downregulated"

        df.attrs["comparison"] = state.title or state.table or ""
        return df

    def render_figure(self, data: pd.DataFrame, state: PlotState) -> go.Figure:

        if data is None or data.empty:
            return self.empty_figure("No data to show")

        fig = px.scatter(
            data,
            x="log2FC",
            y="neg_log10_pvalue",
            color="significance",
            hover_data={
                "gene": True,
                "log2FC": True,
                "pvalue": True,
                "adj_pvalue": True,
            },
            color_discrete_map={
                "Not Significant": "lightgray",
                "Upregulated": "red",
                "Downregulated": "blue",
            },
        )

        for x in (state.lfc_threshold, -state.lfc_threshold):
            fig.add_vline(x=x, line_dash="dash", line_color="black", opacity=0.6)

        fig.update_layout(
            height=600,
            margin=dict(l=40, r=40, b=40, t=60),
            xaxis_title="log2(Fold Change)",
            yaxis_title="-log10(p-value)",
            legend_title="Significance",
            title=f"Volcano plot ({data.attrs.get('comparison', '')})",
        )

        return fig
