"""Thermal engine, kernel uevent listener and GDDV adaptive-policy decoding."""

__version__ = "0.1.0"