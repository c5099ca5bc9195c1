"""Background job core for video uploads: queue, workers, thumbnail extraction."""

__version__ = "0.3.0"
