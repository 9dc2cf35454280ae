"""Keysmith — obtain and store the secrets your tools need."""

__version__ = "0.1.0"
