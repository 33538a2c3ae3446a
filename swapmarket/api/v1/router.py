from fastapi import APIRouter

from swapmarket.api.v1.endpoints.health import router as health_router
from swapmarket.api.v1.endpoints.targets import router as targets_router
from swapmarket.api.v1.endpoints.proposals import router as proposals_router
from swapmarket.api.v1.endpoints.auctions import router as auctions_router
from swapmarket.api.v1.endpoints.history import router as history_router
from swapmarket.api.v1.endpoints.settlements import router as settlements_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(targets_router, tags=["targeting"])
router.include_router(proposals_router, tags=["proposals"])
router.include_router(auctions_router, tags=["auctions"])
router.include_router(history_router, tags=["history"])
router.include_router(settlements_router, tags=["settlements"])
