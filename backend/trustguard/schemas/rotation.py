from pydantic import BaseModel, Field


class RotationRunRequest(BaseModel):
    force: bool = Field(False, description="Reissue every certificate even when none is due")
