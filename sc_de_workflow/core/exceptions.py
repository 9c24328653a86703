class ScDEWorkflowError(Exception):
    """Base exception for all sc_de_workflow errors"""
    pass

class ConfigError(ScDEWorkflowError):
    """Invalid or inconsistent global.json / dataset json"""
    pass

class DatasetSchemaError(ScDEWorkflowError):
    """
    AnnData doesn't match what the workflow expects:
    missing layers, obs columns, non-count data where counts are required, etc
    """
    pass
