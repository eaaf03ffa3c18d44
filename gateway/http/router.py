"""HTTP route registry for gateway APIs."""

from fastapi import APIRouter

from .routes.commands import router as commands_router
from .routes.status import router as status_router

router = APIRouter()

router.include_router(commands_router)
router.include_router(status_router)
