"""Error taxonomy for the loaders and the command line edge.

The matching and correlation core never raises on bad data; these errors
only surface where files are read or settings are parsed.
"""
from typing import Optional


# Error code taxonomy
class ErrorCodes:
    # Rule loading
    RULE_FILE_MISSING = "E.RULE.001"
    RULE_FILE_UNREADABLE = "E.RULE.002"
    RULE_MALFORMED = "E.RULE.003"
    RULE_DUPLICATE_ID = "E.RULE.004"

    # Event ingestion
    EVENT_FILE_MISSING = "E.EVT.001"
    EVENT_FILE_UNREADABLE = "E.EVT.002"

    # Configuration
    CONFIG_UNPARSEABLE = "E.CFG.001"
    CONFIG_INVALID_VALUE = "E.CFG.002"
    LOG_DIR_UNUSABLE = "E.CFG.003"


class HuntError(Exception):
    """Base error carrying a taxonomy code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class RuleLoadError(HuntError):
    pass


class EventLoadError(HuntError):
    pass


class ConfigError(HuntError):
    pass
