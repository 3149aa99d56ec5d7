"""
SettlementValidator — turns a raw SettlementIngestionRequest into a Settlement.

Every rule is checked and every violation collected, so a rejected request
reports all of its problems at once. A missing field produces exactly one
error; format rules only run on fields that are present.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from config.settings import settings
from models.domain import (
    BusinessStatus,
    Settlement,
    SettlementDirection,
    SettlementIngestionRequest,
    SettlementType,
)
from models.errors import ValidationError

REQUIRED_FIELDS = (
    "settlement_id",
    "settlement_version",
    "pts",
    "processing_entity",
    "counterparty_id",
    "value_date",
    "currency",
    "amount",
    "business_status",
    "direction",
    "settlement_type",
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _enum_values(enum_cls) -> str:
    return ", ".join(m.value for m in enum_cls)


class SettlementValidator:
    def __init__(
        self,
        supported_currencies: Optional[frozenset[str]] = None,
        max_amount: Optional[Decimal] = None,
        max_id_length: Optional[int] = None,
    ) -> None:
        self.supported_currencies = supported_currencies or settings.supported_currencies
        self.max_amount           = max_amount if max_amount is not None else settings.max_settlement_amount
        self.max_id_length        = max_id_length or settings.max_settlement_id_length

    def validate(self, request: SettlementIngestionRequest) -> Settlement:
        """Return the parsed Settlement, or raise ValidationError listing every violation."""
        errors: list[str] = []
        missing = {f for f in REQUIRED_FIELDS if _is_blank(getattr(request, f))}
        errors.extend(f"{f} is required" for f in REQUIRED_FIELDS if f in missing)

        settlement_id = None
        if "settlement_id" not in missing:
            settlement_id = str(request.settlement_id).strip()
            if len(settlement_id) > self.max_id_length:
                errors.append(f"settlement_id must be at most {self.max_id_length} characters")

        version = None
        if "settlement_version" not in missing:
            version = self._parse_version(request.settlement_version, errors)

        value_date = None
        if "value_date" not in missing:
            value_date = self._parse_date(request.value_date, errors)

        currency = None
        if "currency" not in missing:
            currency = str(request.currency).strip().upper()
            if len(currency) != 3 or not currency.isalpha():
                errors.append(f"currency must be a 3-letter ISO 4217 code, got {request.currency!r}")
                currency = None
            elif currency not in self.supported_currencies:
                errors.append(f"currency {currency} is not supported")
                currency = None

        amount = None
        if "amount" not in missing:
            amount = self._parse_amount(request.amount, errors)

        direction = self._parse_enum(
            SettlementDirection, "direction", request.direction, missing, errors
        )
        settlement_type = self._parse_enum(
            SettlementType, "settlement_type", request.settlement_type, missing, errors
        )
        business_status = self._parse_enum(
            BusinessStatus, "business_status", request.business_status, missing, errors
        )

        if errors:
            raise ValidationError(errors)

        return Settlement(
            settlement_id=settlement_id,
            settlement_version=version,
            pts=str(request.pts).strip(),
            processing_entity=str(request.processing_entity).strip(),
            counterparty_id=str(request.counterparty_id).strip(),
            value_date=value_date,
            currency=currency,
            amount=amount,
            direction=direction,
            settlement_type=settlement_type,
            business_status=business_status,
        )

    # ── Field parsers ─────────────────────────────────────────────────────────

    @staticmethod
    def _parse_version(raw: Any, errors: list[str]) -> Optional[int]:
        if isinstance(raw, bool):
            errors.append("settlement_version must be a positive integer")
            return None
        try:
            version = int(str(raw).strip())
        except ValueError:
            errors.append(f"settlement_version must be a positive integer, got {raw!r}")
            return None
        if version <= 0:
            errors.append(f"settlement_version must be a positive integer, got {raw!r}")
            return None
        return version

    @staticmethod
    def _parse_date(raw: Any, errors: list[str]) -> Optional[date]:
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        try:
            return date.fromisoformat(str(raw).strip())
        except ValueError:
            errors.append(f"value_date must be an ISO date (YYYY-MM-DD), got {raw!r}")
            return None

    def _parse_amount(self, raw: Any, errors: list[str]) -> Optional[Decimal]:
        if isinstance(raw, bool):
            errors.append("amount must be a number")
            return None
        try:
            amount = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            errors.append(f"amount must be a number, got {raw!r}")
            return None
        if not amount.is_finite():
            errors.append(f"amount must be a number, got {raw!r}")
            return None

        ok = True
        if amount < 0:
            errors.append(f"amount must be >= 0, got {amount}")
            ok = False
        if amount.as_tuple().exponent < -2:
            errors.append(f"amount must have at most 2 decimal places, got {amount}")
            ok = False
        if amount > self.max_amount:
            errors.append(f"amount must not exceed {self.max_amount}, got {amount}")
            ok = False
        return amount if ok else None

    @staticmethod
    def _parse_enum(enum_cls, name: str, raw: Any, missing: set[str], errors: list[str]):
        if name in missing:
            return None
        try:
            return enum_cls(str(raw).strip().upper())
        except ValueError:
            errors.append(f"{name} must be one of {_enum_values(enum_cls)}, got {raw!r}")
            return None
