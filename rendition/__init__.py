"""
rendition - Content negotiation and transform scheduling for typed content blocks.

Composes a block-kind registry, resolves the best representation for a
client's capabilities, and schedules deduplicated transforms when no
available representation fits.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = [
    "RenditionConfig",
    "load_config",
    "get_rendition_home",
    "RegistryStore",
    "VariantResolver",
    "TransformScheduler",
    "DeliveryService",
]

from .config import RenditionConfig, load_config, get_rendition_home
from .registry import RegistryStore
from .resolver import VariantResolver
from .scheduler import TransformScheduler
from .delivery import DeliveryService
