"""Biometric Authentication Session Manager"""

__version__ = "1.0.0"
