from fastapi import APIRouter
from sqlgate.api.endpoints import audit, auth, tools

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(auth.router)
api_router.include_router(tools.router)
api_router.include_router(audit.router)
