from pydantic import BaseModel, Field


class OrderCreate(BaseModel):
    credits: int = Field(..., gt=0, le=1_000_000)
