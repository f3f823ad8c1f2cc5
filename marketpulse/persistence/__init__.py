"""Persistence layer for assets, prices and historical series."""

from .store import AssetStore

__all__ = ['AssetStore']
