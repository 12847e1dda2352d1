"""Beacon-node client, relay data types, PostgreSQL storage and export tools for a block-builder relay."""

__version__ = "0.1.0"