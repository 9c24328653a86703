from __future__ import annotations

import pandas as pd
import plotly.express as px
import plotly.graph_objs as go

from sc_de_workflow.core.exceptions import DatasetSchemaError
from sc_de_workflow.views.base_view import BaseView
from sc_de_workflow.views.plot_state import PlotState


class ExpressionView(BaseView):
    """
    Violin plot of log-expression per group for one gene,
    optionally coloured by a second factor (e.g. plate).
    """

    id = "expression"
    label = "Expression"

    def _pick_gene(self, state: PlotState) -> str | None:
        if state.genes:
            return state.genes[0]
        table = self.table(state)
        if table.empty:
            return None
        if "gene" in table.columns:
            return str(table["gene"].iloc[0])
        return str(table.index[0])

    def compute_data(self, state: PlotState) -> pd.DataFrame:
        ds = self.dataset

        gene = self._pick_gene(state)
        if gene is None or gene not in ds.genes:
            return pd.DataFrame()

        expr_df = ds.expression_matrix([gene])
        if expr_df.empty:
            return pd.DataFrame()

        try:
            group = ds.labels(state.groupby)
            split = ds.labels(state.split_by) if state.split_by else None
        except DatasetSchemaError:
            return pd.DataFrame()

        df = pd.DataFrame(
            {
                "expression": expr_df[gene].to_numpy(),
                "group": group.to_numpy(),
                "gene": gene,
            },
            index=expr_df.index,
        )
        if split is not None:
            df["split"] = split.to_numpy()

        return df

    def render_figure(self, data: pd.DataFrame, state: PlotState) -> go.Figure:

        if data is None or data.empty:
            return self.empty_figure("No data to show")

        gene = str(data["gene"].iloc[0])
        fig = px.violin(
            data,
            x="group",
            y="expression",
            color="split" if "split" in data.columns else None,
            box=True,
            points="all",
            category_orders={"group": sorted(data["group"].unique())},
        )

        fig.update_layout(
            height=500,
            margin=dict(l=40, r=40, b=40, t=60),
            xaxis_title=state.groupby,
            yaxis_title=f"{gene} log2(normalised count + 1)",
            legend_title=state.split_by or "",
            title=state.title or gene,
        )

        return fig
