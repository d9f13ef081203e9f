from fastapi import APIRouter

from embedproxy.api.cache.routes import router as cache_router
from embedproxy.api.proxy.routes import router as proxy_router

router = APIRouter()
router.include_router(proxy_router)
router.include_router(cache_router)
