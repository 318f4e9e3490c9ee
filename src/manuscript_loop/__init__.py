"""Iterative task orchestration for the compound engineering book manuscript."""

__version__ = "0.1.0"
