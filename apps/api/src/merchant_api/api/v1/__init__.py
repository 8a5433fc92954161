from fastapi import APIRouter

from .endpoints import (
    health,
    magic_rules,
    observability,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(magic_rules.router)
router.include_router(observability.router)
