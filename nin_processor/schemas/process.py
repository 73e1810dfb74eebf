from pydantic import BaseModel, ConfigDict, Field


class ProcessRequest(BaseModel):
    bulk_fk: int = Field(alias="bulkFk", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class ProcessResponse(BaseModel):
    code: int
    success: bool
    message: str
