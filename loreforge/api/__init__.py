"""API router for v1 endpoints."""

from fastapi import APIRouter

from loreforge.api import canon, generation

router = APIRouter()

# Staged generation sessions
router.include_router(generation.router, prefix="/generation", tags=["generation"])

# Canon library: entities and collections
router.include_router(canon.router, prefix="/canon", tags=["canon"])
