from fastapi import APIRouter

from loader_governance.routers import approval, imports, loader

api_router = APIRouter()
api_router.include_router(loader.router)
api_router.include_router(approval.router)
api_router.include_router(imports.router)

__all__ = ["api_router"]
