from fastapi import APIRouter, Depends, Path, status
from fastapi.responses import JSONResponse

from nin_processor.jobs.driver import TriggerResult, get_driver
from nin_processor.schemas.process import ProcessRequest, ProcessResponse

router = APIRouter()


@router.post("", response_model=ProcessResponse)
async def process_bulk(payload: ProcessRequest, driver=Depends(get_driver)) -> JSONResponse:
    result = await driver.initiate(payload.bulk_fk)
    return _to_response(result)


@router.post("/{bulk_pk}/resume", response_model=ProcessResponse)
async def resume_bulk(bulk_pk: int = Path(ge=1), driver=Depends(get_driver)) -> JSONResponse:
    result = await driver.resume(bulk_pk)
    return _to_response(result)


def _to_response(result: TriggerResult) -> JSONResponse:
    body = ProcessResponse(code=result.code, success=result.success, message=result.message)
    status_code = status.HTTP_200_OK if result.code == 0 else status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=status_code, content=body.model_dump())
