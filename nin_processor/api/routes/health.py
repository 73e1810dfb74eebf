from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "Healthy", "message": "The application is running smoothly!"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
