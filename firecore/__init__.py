"""Supervision, log plugins, block archiving, operator commands and bootstrapping for a reader node."""

__version__ = "0.1.0"