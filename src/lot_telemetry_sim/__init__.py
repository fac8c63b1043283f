"""Lot Telemetry Simulator - synthetic sensor data and lot completion."""

__version__ = "0.1.0"

from .config import Config
from .simulator import Simulator
from .coordinator import Coordinator
from .completion import CompletionDetector

__all__ = ["Simulator", "Config", "Coordinator", "CompletionDetector", "__version__"]
