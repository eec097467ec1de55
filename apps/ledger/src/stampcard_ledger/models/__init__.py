"""SQLAlchemy models package."""

from .cards import ClientCard, StampLedgerEntry, StampLedgerEntryType  # noqa: F401
from .rewards import (  # noqa: F401
    UNLIMITED_STOCK,
    Reward,
    RewardRedemption,
    RewardRedemptionStatus,
)
from .scratch import (  # noqa: F401
    ScratchCampaign,
    ScratchCampaignStatus,
    ScratchIssuancePolicy,
    ScratchParticipation,
    ScratchPrize,
    ScratchPrizeType,
    ScratchTicket,
    ScratchTicketStatus,
)
from .stamps import PurchaseType, StampCode, StampCodeStatus, StampType  # noqa: F401
