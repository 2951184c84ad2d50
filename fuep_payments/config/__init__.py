# Configuration package
"""
Configuration package for the FUEP payment service
Exports settings from settings.py for easy import
"""
from .settings import Settings, settings, validate_settings

__all__ = ["Settings", "settings", "validate_settings"]
