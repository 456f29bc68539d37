# sitefleet/utils/cache/__init__.py
from .manager import CacheEntry, CacheStore

__all__ = ["CacheEntry", "CacheStore"]
