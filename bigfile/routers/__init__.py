# Routers package for bigfile

from . import chunked, objects

__all__ = ["chunked", "objects"]
