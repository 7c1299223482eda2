"""
Configuration modules for object placement.
"""

from .config import Settings, settings
from .layer_presets import PRESETS, get_preset, list_presets, load_layer_catalog

__all__ = ['Settings', 'settings', 'PRESETS', 'get_preset', 'list_presets', 'load_layer_catalog']
