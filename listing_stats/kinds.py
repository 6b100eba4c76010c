from enum import Enum


class CounterKind(str, Enum):
    IMPRESSION = "impression"
    CLICK = "click"

    @property
    def total_column(self) -> str:
        return "total_impressions" if self is CounterKind.IMPRESSION else "total_clicks"

    @property
    def daily_column(self) -> str:
        return "impressions" if self is CounterKind.IMPRESSION else "clicks"


# Drain order: impressions first, then clicks
KINDS = (CounterKind.IMPRESSION, CounterKind.CLICK)
