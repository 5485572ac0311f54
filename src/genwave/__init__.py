from .api import Engine as Engine
from .api import build_engine as build_engine
from .config import Settings as Settings
from .models import BatchInput as BatchInput
from .models import BatchSettings as BatchSettings
from .models import BatchSnapshot as BatchSnapshot
from .scheduler import BatchScheduler as BatchScheduler

__all__ = [
    "Engine",
    "build_engine",
    "Settings",
    "BatchInput",
    "BatchSettings",
    "BatchSnapshot",
    "BatchScheduler",
]
