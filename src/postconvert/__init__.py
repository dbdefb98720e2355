"""
postconvert package.

This module provides a FastAPI application that normalizes image, HEIC and
PDF uploads to JPEG. Endpoints are `/convert` and `/convert/pdf`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
