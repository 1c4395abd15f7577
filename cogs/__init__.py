"""COGS: node-local accelerator claim broker."""

__version__ = "0.3.0"
