"""
TTL configuration and data-class lookups.
"""
from typing import Dict, Any, Tuple, Union

from .core import DataClass
from .errors import ConfigurationError

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 30 * DAY


# TTL configuration by data class (in seconds)
TTL_CONFIG: Dict[DataClass, Dict[str, Any]] = {
    DataClass.LIVE_STATUS: {
        "primary_ttl": 30,              # 30 seconds
        "fallback_ttl": 5 * MINUTE,     # 5 minutes
        "error_protected": False,       # OK to lose
        "conditional_fetch": False,     # Too volatile for ETags
        "label": "Live Status",
    },
    DataClass.HISTORY: {
        "primary_ttl": 5 * MINUTE,
        "fallback_ttl": HOUR,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "History",
    },
    DataClass.TOP_WEEKLY: {
        "primary_ttl": HOUR,
        "fallback_ttl": DAY,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (7 days)",
    },
    DataClass.TOP_MONTHLY: {
        "primary_ttl": 2 * HOUR,
        "fallback_ttl": 3 * DAY,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (1 month)",
    },
    DataClass.TOP_QUARTERLY: {
        "primary_ttl": 6 * HOUR,
        "fallback_ttl": 3 * DAY,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (3 months)",
    },
    DataClass.TOP_HALF_YEAR: {
        "primary_ttl": 12 * HOUR,
        "fallback_ttl": WEEK,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (6 months)",
    },
    DataClass.TOP_YEARLY: {
        "primary_ttl": DAY,
        "fallback_ttl": WEEK,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (12 months)",
    },
    DataClass.TOP_ALLTIME: {
        "primary_ttl": DAY,
        "fallback_ttl": WEEK,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Top (All Time)",
    },
    DataClass.RATINGS: {
        "primary_ttl": DAY,
        "fallback_ttl": WEEK,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Ratings",
    },
    DataClass.FAVORITES: {
        "primary_ttl": DAY,
        "fallback_ttl": WEEK,
        "error_protected": True,
        "conditional_fetch": True,
        "label": "Favorites",
    },
    DataClass.ARTWORK: {
        "primary_ttl": WEEK,
        "fallback_ttl": MONTH,
        "error_protected": True,
        "conditional_fetch": False,     # Too stable to bother
        "label": "Artwork",
    },
    DataClass.METADATA: {
        "primary_ttl": MONTH,
        "fallback_ttl": 3 * MONTH,
        "error_protected": True,
        "conditional_fetch": False,
        "label": "Metadata",
    },
}

def _check_fallback_outlives_primary(config: Dict[DataClass, Dict[str, Any]]) -> None:
    """Fallback data must outlive primary data to be useful as a safety net."""
    for data_class, policy in config.items():
        if policy["fallback_ttl"] < policy["primary_ttl"]:
            raise ConfigurationError(
                f"{data_class.value}: fallback TTL {policy['fallback_ttl']}s is shorter "
                f"than primary TTL {policy['primary_ttl']}s"
            )


_check_fallback_outlives_primary(TTL_CONFIG)

TOP_ITEM_CLASSES: Tuple[DataClass, ...] = (
    DataClass.TOP_WEEKLY,
    DataClass.TOP_MONTHLY,
    DataClass.TOP_QUARTERLY,
    DataClass.TOP_HALF_YEAR,
    DataClass.TOP_YEARLY,
    DataClass.TOP_ALLTIME,
)

# Last.fm style period strings
PERIOD_CLASSES: Dict[str, DataClass] = {
    "7day": DataClass.TOP_WEEKLY,
    "1month": DataClass.TOP_MONTHLY,
    "3month": DataClass.TOP_QUARTERLY,
    "6month": DataClass.TOP_HALF_YEAR,
    "12month": DataClass.TOP_YEARLY,
    "overall": DataClass.TOP_ALLTIME,
}


def _config_for(data_class: Union[DataClass, str]) -> Dict[str, Any]:
    """Look up the policy row, accepting an enum member or its value."""
    if not isinstance(data_class, DataClass):
        try:
            data_class = DataClass(data_class)
        except ValueError:
            raise ConfigurationError(f"Unknown data class: {data_class!r}") from None

    config = TTL_CONFIG.get(data_class)
    if config is None:
        raise ConfigurationError(f"No TTL policy for data class: {data_class.value}")
    return config


def get_primary_ttl(data_class: Union[DataClass, str]) -> int:
    """Seconds a value stays fresh in the memory and persistent layers."""
    return _config_for(data_class)["primary_ttl"]


def get_fallback_ttl(data_class: Union[DataClass, str]) -> int:
    """Seconds last-known-good data is worth keeping for this class."""
    return _config_for(data_class)["fallback_ttl"]


def is_error_protected(data_class: Union[DataClass, str]) -> bool:
    """True if a failed fetch must never touch existing fallback data."""
    return _config_for(data_class)["error_protected"]


def supports_conditional_fetch(data_class: Union[DataClass, str]) -> bool:
    """True if upstream validators (ETags) are worth keeping for this class."""
    return _config_for(data_class)["conditional_fetch"]


def get_label(data_class: Union[DataClass, str]) -> str:
    return _config_for(data_class)["label"]


def requires_polling(data_class: Union[DataClass, str]) -> bool:
    """Only live status needs clients to poll for updates."""
    _config_for(data_class)
    return DataClass(data_class) == DataClass.LIVE_STATUS


def get_ttl_for_class(data_class: Union[DataClass, str]) -> Tuple[int, int, bool]:
    """
    Get the full TTL configuration for a data class.

    Returns:
        (primary_ttl, fallback_ttl, error_protected)
    """
    config = _config_for(data_class)
    return (
        config["primary_ttl"],
        config["fallback_ttl"],
        config["error_protected"],
    )


def data_class_for_period(period: str) -> DataClass:
    """
    Map a period string (7day, 1month, ..., overall) to its data class.

    Unknown periods default to the weekly class.
    """
    return PERIOD_CLASSES.get(period, DataClass.TOP_WEEKLY)
