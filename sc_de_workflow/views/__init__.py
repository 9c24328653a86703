from .base_view import BaseView
from .gene_expression_view import ExpressionView
from .heat_map_view import MarkerHeatmapView
from .plot_state import PlotState
from .view_registry import ViewRegistry
from .volcano_plot_view import VolcanoPlotView


def default_registry() -> ViewRegistry:
    """Registry holding every built-in view."""
    registry = ViewRegistry()
    for view_cls in (VolcanoPlotView, MarkerHeatmapView, ExpressionView):
        registry.register(view_cls)
    return registry


__all__ = [
    "BaseView",
    "ExpressionView",
    "MarkerHeatmapView",
    "PlotState",
    "ViewRegistry",
    "VolcanoPlotView",
    "default_registry",
]
