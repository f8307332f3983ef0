from .dynamic_ratio import (
    DynamicRatioConfig,
    DynamicRatioConfigStore,
    DynamicRatioMode,
    GroupRuleSet,
    RPMRangeRatio,
    TimeRangeRatio,
    is_hour_in_range,
    parse_dynamic_ratio_config,
)
from .engine import RateSubject, RatioEngine
from .errors import (
    GroupNotUsable,
    PricingError,
    RatioConfigValidationError,
    UpstreamUnavailable,
)
from .group_resolver import resolve_usable_groups
from .group_settings import GroupSettings, GroupSettingsStore
from .ranking import RankingCache, RankingSnapshot, mask_ip, mask_ips
from .rate_sampler import RateSource, RedisRateSampler
from .service import PricingService, UsableGroup

__all__ = [
    "DynamicRatioConfig",
    "DynamicRatioConfigStore",
    "DynamicRatioMode",
    "GroupRuleSet",
    "RPMRangeRatio",
    "TimeRangeRatio",
    "is_hour_in_range",
    "parse_dynamic_ratio_config",
    "RateSubject",
    "RatioEngine",
    "GroupNotUsable",
    "PricingError",
    "RatioConfigValidationError",
    "UpstreamUnavailable",
    "resolve_usable_groups",
    "GroupSettings",
    "GroupSettingsStore",
    "RankingCache",
    "RankingSnapshot",
    "mask_ip",
    "mask_ips",
    "RateSource",
    "RedisRateSampler",
    "PricingService",
    "UsableGroup",
]
