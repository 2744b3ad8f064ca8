"""Aesir - firmware flashing orchestration for Samsung download-mode devices.

This package resolves firmware selections (standalone images or tar
archives, optionally compressed) against the device's Partition Information
Table and drives them through an interchangeable flashing backend.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
