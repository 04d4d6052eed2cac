"""
Document Job Service package.

This package provides a FastAPI application that accepts convert, merge and
split jobs for documents, and the queue workers that execute them.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
