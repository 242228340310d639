# API Routers

from . import prices, database, health

__all__ = ["prices", "database", "health"]
