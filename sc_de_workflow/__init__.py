"""
Top-level package for the single-cell differential expression workflow.

Most code should import from submodules such as:
    sc_de_workflow.core
    sc_de_workflow.analysis
    sc_de_workflow.reports
"""

__version__ = "0.1.0"

__all__: list[str] = []
