"""
Exceptions raised by the scoring engine.
"""


class EngineError(Exception):
    """Base class for scoring engine errors"""


class MetricNotActiveError(EngineError):
    """Operation attempted on a metric whose status is not ACTIVE"""


class MetricNotFound(EngineError):
    """The requested metric does not exist"""


class ModelNotFound(EngineError):
    """The requested model has no checkpoint (and possibly no definition)"""
