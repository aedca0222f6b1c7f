"""Document chat backed by a retrieval-augmented context pipeline."""

__all__ = ["__version__"]

__version__ = "0.1.0"
