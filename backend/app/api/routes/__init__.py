"""
API route modules.
"""
from app.api.routes import jobs, insights

__all__ = ["jobs", "insights"]
