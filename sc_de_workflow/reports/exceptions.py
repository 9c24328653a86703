from sc_de_workflow.core.exceptions import ScDEWorkflowError

class VignetteError(ScDEWorkflowError):
    """Vignette sources can't be compiled (bad front matter, unknown or cyclic dependency, template error)"""
    pass

class CrossReferenceError(VignetteError):
    """A link, table or figure reference points at something that doesn't exist"""
    pass
