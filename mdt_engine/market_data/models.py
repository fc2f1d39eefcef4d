"""
Market data models for the normalized per-symbol record.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MarketRecord(BaseModel):
    """
    Latest known state of one symbol.

    Canonical numeric fields are optional: None means "no data yet", which
    is not the same as zero. Anything else the venue sends is kept in
    ``extra`` for downstream consumers.
    """

    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(..., description="Token the record is keyed by")
    ltp: float | None = Field(default=None, description="Last traded price")
    change: float | None = Field(default=None, description="Absolute change")
    change_percent: float | None = Field(
        default=None,
        alias="changePercent",
        description="Percent change (wire: p_change or changePercent)",
    )
    volume: float | None = Field(
        default=None,
        description="Traded volume (wire: tot_vol or volume)",
    )
    high: float | None = Field(default=None, description="Session high")
    low: float | None = Field(default=None, description="Session low")
    open: float | None = Field(default=None, description="Session open")
    close: float | None = Field(default=None, description="Previous close")
    extra: dict[str, Any] = Field(
        default_factory=dict,
        description="Non-canonical fields passed through from the venue",
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    update_count: int = Field(default=0, description="Frames merged into this record")

    def merge(self, canonical: dict[str, float], extra: dict[str, Any]) -> None:
        """
        Overwrite only the fields present in a new frame.

        Args:
            canonical: Normalized canonical fields (attribute names)
            extra: Pass-through fields
        """
        for name, value in canonical.items():
            setattr(self, name, value)
        self.extra.update(extra)
        self.updated_at = datetime.now(UTC)
        self.update_count += 1

    def to_payload(self) -> dict[str, Any]:
        """Flatten to the shape consumers expect: symbol, present fields, extras."""
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            self.model_dump(
                by_alias=True,
                exclude_none=True,
                exclude={"extra", "updated_at", "update_count"},
            )
        )
        return payload
