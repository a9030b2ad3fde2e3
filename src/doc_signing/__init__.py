"""
Document Signing Service package.

Provides the multi-party execution core (template merge, sequential signing,
preview conversion) and a FastAPI application exposing it over REST.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
