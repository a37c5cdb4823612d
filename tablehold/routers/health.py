from fastapi import APIRouter, Depends, HTTPException

from tablehold.deps import Services, get_services


router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, bool]:
    """Basic liveness probe."""
    return {"ok": True}


@router.get("/readiness")
async def readiness(services: Services = Depends(get_services)) -> dict[str, bool]:
    """Ensure the request store and Redis are reachable."""
    try:
        await services.ping()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="Dependencies unavailable") from exc

    return {"ready": True}
