"""TrackQ - AI categorization core for a personal productivity tracker"""

from __future__ import annotations

__version__ = "0.1.0"


def __getattr__(name: str):
    """
    Lazy imports to avoid opening the database or HTTP stack when only importing lightweight modules.
    """
    if name in ("Services", "build_services"):
        from trackq import app

        return getattr(app, name)
    if name == "Categorizer":
        from trackq.classification.categorizer import Categorizer

        return Categorizer
    if name == "InsightEngine":
        from trackq.insights.engine import InsightEngine

        return InsightEngine
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = ["Categorizer", "InsightEngine", "Services", "build_services"]
