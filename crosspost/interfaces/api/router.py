from fastapi import APIRouter

from crosspost.interfaces.api.accounts import router as accounts_router
from crosspost.interfaces.api.health import router as health_router
from crosspost.interfaces.api.oauth import router as oauth_router
from crosspost.interfaces.api.posts import router as posts_router
from crosspost.interfaces.api.queue import router as queue_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(oauth_router)
api_router.include_router(accounts_router)
api_router.include_router(posts_router)
api_router.include_router(queue_router)
