"""Read-only mappings of trading tables used by compliance reports."""

from .models import Order, Trade

__all__ = ["Order", "Trade"]
