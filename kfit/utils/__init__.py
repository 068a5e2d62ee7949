"""Utilities package for the kfit kinetic fitting tools.

This package provides helper modules that support the core fitting code
without being specific to any kinetic model. Currently this is:
- Input validation helpers (shape and value checks performed before fitting).
"""
