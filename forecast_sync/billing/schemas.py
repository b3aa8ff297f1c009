"""
Billing configuration schemas.

Billable items arrive from the store with heterogeneous property names
for the same logical field (vendor-native names, older custom names,
localized names). ``resolve_billing_item`` maps all of them onto one
canonical ``BillingConfig`` at the boundary; nothing downstream looks at
raw property names.
"""
from datetime import date
from typing import Any, Dict, Iterable, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from forecast_sync.errors import ValidationError
from forecast_sync.dates import to_date

TRUE_VALUES = {"true", "1", "si", "sí", "yes", "y", "on"}


def _to_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip().split(".")[0])
    except ValueError:
        return None


class RawBillingProperties(BaseModel):
    """Item properties as the store returns them, aliases resolved."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    start_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices(
            "start_date",
            "hs_recurring_billing_start_date",
            "recurringbillingstartdate",
            "fecha_inicio_de_facturacion",
        ),
    )
    frequency: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "frequency",
            "recurringbillingfrequency",
            "hs_recurring_billing_frequency",
        ),
    )
    term: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices(
            "term",
            "hs_recurring_billing_number_of_payments",
            "number_of_payments",
        ),
    )
    auto_renew: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("auto_renew", "renovacion_automatica"),
    )
    paused: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("paused", "pausa")
    )
    pause_reason: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pause_reason", "motivo_de_pausa", "motivo_pausa"),
    )
    cancelled: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("cancelled", "cancelado")
    )
    automated: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices(
            "automated",
            "facturacion_automatica",
            "billing_automatico",
            "of_facturacion_automatica",
        ),
    )
    last_ticketed_date: Optional[date] = Field(
        default=None, validation_alias=AliasChoices("last_ticketed_date")
    )
    next_billing_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices("next_billing_date", "billing_next_date"),
    )
    remaining_installments: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("remaining_installments", "facturas_restantes"),
    )
    item_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("item_key", "line_item_key", "of_line_item_key"),
    )
    mirror_of: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mirror_of", "of_line_item_py_origen_id"),
    )
    name: Optional[str] = None

    @field_validator("start_date", "last_ticketed_date", "next_billing_date", mode="before")
    @classmethod
    def _parse_date(cls, v):
        return to_date(v)

    @field_validator("term", "remaining_installments", mode="before")
    @classmethod
    def _parse_int(cls, v):
        return _to_int(v)

    @field_validator("auto_renew", "paused", "cancelled", "automated", mode="before")
    @classmethod
    def _parse_bool(cls, v):
        return _to_bool(v)

    @field_validator("frequency", "pause_reason", "item_key", "mirror_of", "name", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class BillingConfig(BaseModel):
    """Canonical billing configuration of one billable item."""

    start_date: Optional[date] = None
    frequency: Optional[str] = None
    term: Optional[int] = None
    auto_renew: bool = False
    paused: bool = False
    pause_reason: Optional[str] = None
    cancelled: bool = False
    automated: bool = False
    last_ticketed_date: Optional[date] = None
    next_billing_date: Optional[date] = None

    @property
    def has_term(self) -> bool:
        return self.term is not None and self.term > 0

    @property
    def is_auto_renew(self) -> bool:
        """Explicit flag, or a recurring item without a usable term."""
        return self.auto_renew or not self.has_term


class BillableItem(BaseModel):
    """A billable item with its stable identity and resolved config."""

    id: str
    stable_id: str
    config: BillingConfig
    name: Optional[str] = None
    remaining_installments: Optional[int] = None
    is_mirror: bool = False


class ParentRecord(BaseModel):
    """The commercial record owning a set of billable items."""

    id: str
    progress: Optional[str] = None
    cancelled: bool = False
    cancellation_reason: Optional[str] = None
    name: Optional[str] = None


def resolve_billing_item(record_id: Any, properties: Dict[str, Any]) -> BillableItem:
    """
    Build a BillableItem from raw store properties.

    Stable identity: explicit item key, else the id of the item this one
    mirrors, else the item's own id.
    """
    item_id = "" if record_id is None else str(record_id).strip()
    if not item_id:
        raise ValidationError("missing_item_id", "Billable item has no id")

    raw = RawBillingProperties.model_validate(properties or {})
    stable_id = raw.item_key or raw.mirror_of or item_id

    config = BillingConfig(
        start_date=raw.start_date,
        frequency=raw.frequency,
        term=raw.term,
        auto_renew=bool(raw.auto_renew),
        paused=bool(raw.paused),
        pause_reason=raw.pause_reason,
        cancelled=bool(raw.cancelled),
        automated=bool(raw.automated),
        last_ticketed_date=raw.last_ticketed_date,
        next_billing_date=raw.next_billing_date,
    )
    return BillableItem(
        id=item_id,
        stable_id=stable_id,
        config=config,
        name=raw.name,
        remaining_installments=raw.remaining_installments,
        is_mirror=raw.mirror_of is not None,
    )


def resolve_parent(
    record_id: Any, properties: Dict[str, Any], lost_stages: Iterable[str] = ()
) -> ParentRecord:
    """Build a ParentRecord; a progress value in lost_stages counts as cancelled."""
    parent_id = "" if record_id is None else str(record_id).strip()
    if not parent_id:
        raise ValidationError("missing_parent_id", "Parent record has no id")

    props = properties or {}
    progress = props.get("progress") or props.get("dealstage")
    progress = str(progress).strip() if progress else None
    cancelled = bool(_to_bool(props.get("cancelled"))) or (
        progress is not None and progress.lower() in {str(s).lower() for s in lost_stages}
    )
    return ParentRecord(
        id=parent_id,
        progress=progress,
        cancelled=cancelled,
        cancellation_reason=props.get("cancellation_reason") or props.get("closed_lost_reason"),
        name=props.get("name") or props.get("dealname"),
    )
