from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import List, Optional


class CampaignCreate(BaseModel):
    """Schema for creating a draft campaign."""
    name: str = Field(..., min_length=1, max_length=200)
    subject: str = ""
    html: str = ""
    from_email: Optional[EmailStr] = Field(None, alias="fromEmail")
    from_name: Optional[str] = Field(None, alias="fromName")

    model_config = ConfigDict(populate_by_name=True)


class CampaignUpdate(BaseModel):
    """Schema for updating a draft campaign."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    subject: Optional[str] = None
    html: Optional[str] = None
    from_email: Optional[EmailStr] = Field(None, alias="fromEmail")
    from_name: Optional[str] = Field(None, alias="fromName")

    model_config = ConfigDict(populate_by_name=True)


class RecipientsAdd(BaseModel):
    emails: List[str] = Field(..., min_length=1)


class SendRequest(BaseModel):
    """Optional overrides for one send batch."""
    subject: Optional[str] = None
    html: Optional[str] = None
    from_email: Optional[str] = Field(None, alias="fromEmail")
    from_name: Optional[str] = Field(None, alias="fromName")
    limit: Optional[int] = None
    dry_run: bool = Field(False, alias="dryRun")

    model_config = ConfigDict(populate_by_name=True)
