"""
Core domain layer: dataset abstraction, loading and the exception hierarchy
"""

from .dataset import Dataset
from .exceptions import ConfigError, DatasetSchemaError, ScDEWorkflowError

__all__ = ["Dataset", "ConfigError", "DatasetSchemaError", "ScDEWorkflowError"]
