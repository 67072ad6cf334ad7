from .user import User
from .campaign import Campaign, CampaignRecipient
from .wallet import Wallet, CreditLedgerEntry
from .social import SocialAccount, OAuthState, ConnectionUsage, SocialPost
from .payment import Payment

__all__ = [
    "User",
    "Campaign",
    "CampaignRecipient",
    "Wallet",
    "CreditLedgerEntry",
    "SocialAccount",
    "OAuthState",
    "ConnectionUsage",
    "SocialPost",
    "Payment",
]
