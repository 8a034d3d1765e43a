from .base import Source
from .http import HttpSource

__all__ = ["Source", "HttpSource"]
