"""
Exposure limit lookup.

Resolution order for a group: exact group-key override, then counterparty
override, then the configured default.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from config.settings import settings
from models.domain import ExposureGroup


class ExposureLimitConfig:
    def __init__(
        self,
        default_limit: Optional[Decimal] = None,
        overrides: Optional[dict[str, Decimal]] = None,
    ) -> None:
        self.default_limit = (
            default_limit if default_limit is not None else settings.default_exposure_limit_usd
        )
        self._overrides = dict(
            overrides if overrides is not None else settings.exposure_limit_overrides
        )

    def exposure_limit(self, group: ExposureGroup) -> Decimal:
        if group.key in self._overrides:
            return self._overrides[group.key]
        return self._overrides.get(group.counterparty_id, self.default_limit)
