from devmetrics.services.metrics.engine import MetricsEngine, category_key

__all__ = ["MetricsEngine", "category_key"]
