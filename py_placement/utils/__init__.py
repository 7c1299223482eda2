"""
Shared helpers.
"""

from .random import create_rng, seed_to_int
from .logging import configure_logging

__all__ = ['create_rng', 'seed_to_int', 'configure_logging']
