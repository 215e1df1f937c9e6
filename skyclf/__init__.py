"""
SkyClf core: model registry, hot-swappable inference engine and the
containerised training orchestrator.
"""

__version__ = "1.0.0"
