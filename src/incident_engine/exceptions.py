from __future__ import annotations


class EngineError(Exception):
    pass


class ConfigurationError(EngineError):
    pass


class NotFoundError(EngineError):
    pass


class MonitorDisabledError(EngineError):
    pass


class ProbeNotAssignedError(EngineError):
    pass


class TimelineError(EngineError):
    pass


class ScopeError(EngineError):
    pass


class FeedDeliveryError(EngineError):
    pass
