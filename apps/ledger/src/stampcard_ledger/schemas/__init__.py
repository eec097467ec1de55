from .inputs import (  # noqa: F401
    RewardCreateRequest,
    RewardUpdateRequest,
    ScratchCampaignCreateRequest,
    ScratchPrizeCreateRequest,
    StampIssueRequest,
    validate_input,
)
