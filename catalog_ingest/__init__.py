"""
Catalog Feed Ingestion

Materializes a supplier XML product-catalog feed into the relational catalog store
through a parse -> transform -> load pipeline with per-run health tracking.
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
]
