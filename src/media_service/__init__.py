"""
Media Conversion Service package.

This module provides a FastAPI application that converts a media URL into an
audio or video attachment by driving the yt-dlp executable.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
