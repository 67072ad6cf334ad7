from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class PublishRequest(BaseModel):
    text: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    target: Optional[str] = None  # facebook page id; defaults to the selected page

    model_config = ConfigDict(populate_by_name=True)


class PageSelect(BaseModel):
    page_id: str = Field(..., alias="pageId", min_length=1)
    page_name: Optional[str] = Field(None, alias="pageName")

    model_config = ConfigDict(populate_by_name=True)
