"""Score extraction engine for psychoeducational evaluation reports."""

__version__ = "0.1.0"
