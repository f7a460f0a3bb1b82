"""Cross-cutting services."""

from meridian.services.metrics import MetricsEmitter

__all__ = ["MetricsEmitter"]
