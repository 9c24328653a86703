from .compiler import VignetteCompiler, VignetteSource, read_vignette
from .exceptions import CrossReferenceError, VignetteError
from .export_service import ExportService
from .links import make_link, parse_sections, slugify
from .model import FigureMetadata, WorkflowResults

__all__ = [
    "CrossReferenceError",
    "ExportService",
    "FigureMetadata",
    "VignetteCompiler",
    "VignetteError",
    "VignetteSource",
    "WorkflowResults",
    "make_link",
    "parse_sections",
    "read_vignette",
    "slugify",
]
