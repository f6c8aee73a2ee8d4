from fastapi import APIRouter, Request

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
async def health_root(request: Request):
    registry = getattr(request.app.state, "terminals", None)
    return {"ok": True, "ready": registry is not None}
