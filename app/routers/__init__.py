"""
API routers package
"""

from app.routers.records import router as records_router
