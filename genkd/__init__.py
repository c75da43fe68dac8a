"""Firmware image building: the kdimage format and filesystem, archive and bundle handlers."""

__version__ = "0.1.0"