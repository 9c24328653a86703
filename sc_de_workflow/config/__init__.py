"""
Config package for sc_de_workflow.

Responsible for:
- config models (GlobalConfig, DatasetConfig, WorkflowConfig, ObsColumns)
- config I/O helpers live in sc_de_workflow.config.loader
"""

from .model import DatasetConfig, GlobalConfig, ObsColumns, WorkflowConfig

__all__ = ["DatasetConfig", "GlobalConfig", "ObsColumns", "WorkflowConfig"]
