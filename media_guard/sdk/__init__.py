"""
SDK for Media Guard.

Provides the fal queue client and the limit-guarded generation client.
"""

from .fal_queue import FalQueueClient
from .guarded import GenerationRequest, GenerationResult, GuardedGenerator

__all__ = ["FalQueueClient", "GenerationRequest", "GenerationResult", "GuardedGenerator"]
