from .catalog import RewardCatalog  # noqa: F401
from .redemption import RewardRedemptionEngine  # noqa: F401
