"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from bulk_audit.api.v1.endpoints import campaigns

api_router = APIRouter()

api_router.include_router(campaigns.router)
