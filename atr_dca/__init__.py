"""Scaled ATR DCA engine: volatility-adaptive order ladders for derivatives positions."""

from atr_dca.config import DCAConfig
from atr_dca.services.dca_engine import ScaledATRDCAEngine

__version__ = "1.0.0"

__all__ = ["DCAConfig", "ScaledATRDCAEngine", "__version__"]
