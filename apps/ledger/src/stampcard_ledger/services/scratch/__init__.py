from .allocator import ScratchPrizeAllocator  # noqa: F401
from .campaigns import ScratchCampaignService  # noqa: F401
