from .auth import UserCreate, UserLogin, UserResponse
from .campaigns import CampaignCreate, CampaignUpdate, RecipientsAdd, SendRequest
from .social import PublishRequest, PageSelect
from .payments import OrderCreate

__all__ = [
    "UserCreate", "UserLogin", "UserResponse",
    "CampaignCreate", "CampaignUpdate", "RecipientsAdd", "SendRequest",
    "PublishRequest", "PageSelect", "OrderCreate",
]
