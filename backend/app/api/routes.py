from fastapi import APIRouter

from app.api.messages import router as messages_router
from app.api.presence import router as presence_router

router = APIRouter()

router.include_router(messages_router)
router.include_router(presence_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Parley API"}
