"""Ethereum block and contract log tracking with pluggable stores."""

__version__ = "0.1.0"