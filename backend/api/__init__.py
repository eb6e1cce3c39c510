"""
DealFlow API Routers
FastAPI router modules for the administrative and health surfaces.
"""
from backend.api import admin_resilience, health

__all__ = [
    "admin_resilience",
    "health",
]
