"""QA Kernel — policy learning and retry decisions for render QA."""

__version__ = "0.1.0-alpha"
