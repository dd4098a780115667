"""Shared enums and value types for the action engine.

Entity references follow the Google Ads object model: campaigns own ad
groups, ad groups own keywords. Monetary values are Decimals in the account
currency (not micros); conversion to micros is the mutation service's job.
"""

from __future__ import annotations
from enum import Enum


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


# Risk shown next to a staged action uses the same scale as warning severity
RiskLevel = Severity

_SEVERITY_ORDER = {Severity.low: 0, Severity.medium: 1, Severity.high: 2}


def severity_rank(severity: Severity) -> int:
    return _SEVERITY_ORDER[Severity(severity)]


class EntityType(str, Enum):
    campaign = "campaign"
    ad_group = "ad_group"
    keyword = "keyword"


class EntityStatus(str, Enum):
    ENABLED = "ENABLED"
    PAUSED = "PAUSED"


class MatchType(str, Enum):
    EXACT = "EXACT"
    PHRASE = "PHRASE"
    BROAD = "BROAD"


class ActionType(str, Enum):
    PAUSE_ENTITY = "pause_entity"
    ENABLE_ENTITY = "enable_entity"
    UPDATE_BUDGET = "update_budget"
    UPDATE_BID = "update_bid"
    UPDATE_MATCH_TYPE = "update_match_type"
    ADD_NEGATIVES = "add_negatives"


class ActionSource(str, Enum):
    user = "user"
    ai = "ai"
    rule = "rule"
    rollback = "rollback"
