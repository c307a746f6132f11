"""Domain exceptions raised by the resolution engine."""


class ResolutionError(Exception):
    """Base class for resolution engine errors."""


class ConfigError(ResolutionError):
    """A rule table failed to load or validate."""


class AIServiceError(ResolutionError):
    """The AI collaborator was unreachable or returned an unusable response."""


class ShipmentMergeError(ResolutionError):
    """A duplicate-shipment merge request was invalid."""
