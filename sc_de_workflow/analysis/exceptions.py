from sc_de_workflow.core.exceptions import ScDEWorkflowError

class DEConfigError(ScDEWorkflowError):
    """DE configuration invalid (bad groupby/group names, unknown pval_type, etc..)"""
    pass

class DERuntimeError(ScDEWorkflowError):
    """DE failed at runtime (scanpy error, model fit failure, etc)"""
    pass

class DesignMatrixError(DEConfigError):
    """Design matrix is rank deficient or cannot encode the requested comparison"""
    pass
