from .base import GenerationBackend as GenerationBackend
from .gemini import GeminiBackend as GeminiBackend

__all__ = ["GenerationBackend", "GeminiBackend"]
