"""
Configuration and dependency injection.
"""

from .container import Container, setup_container
from .settings import Settings, get_settings, load_settings

__all__ = ["Container", "setup_container", "Settings", "get_settings", "load_settings"]
