# API endpoint routers
from . import crm_sync, health

__all__ = ["crm_sync", "health"]
