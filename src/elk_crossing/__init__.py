"""Binomial mixed models of elk highway crossings."""

__version__ = "0.1.0"
