"""
Identity keys for forecast records.

A forecast record is identified by the parent it belongs to, the stable
identity of the billable item and the occurrence date:

    {parent_id}::LI:{stable_item_id}::{YYYY-MM-DD}

The stable item id is the id that survives cloning/mirroring of an item,
so two passes over a cloned item still produce the same keys.
"""
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Optional, Union

from forecast_sync.dates import to_ymd
from forecast_sync.errors import InvariantViolation

SEPARATOR = "::"
ITEM_MARKER = "LI:"
LEGACY_ITEM_MARKERS = ("LIK:", "LI:")


@dataclass(frozen=True)
class ParsedKey:
    parent_id: str
    item_id: str
    ymd: str


def _check_component(name: str, value: Any) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise InvariantViolation(f"Empty {name} in forecast key")
    if SEPARATOR in text:
        raise InvariantViolation(f"{name} {text!r} contains the key separator")
    return text


def build_key(parent_id: Any, stable_item_id: Any, ymd: Union[str, date]) -> str:
    """Build the identity key for one occurrence."""
    parent = _check_component("parent id", parent_id)
    item = _check_component("item id", stable_item_id)
    if item.upper().startswith(ITEM_MARKER):
        raise InvariantViolation(
            f"Item id {item!r} already carries the {ITEM_MARKER} marker",
            key=f"{parent}{SEPARATOR}{ITEM_MARKER}{item}",
        )
    day = to_ymd(ymd)
    if day is None:
        raise InvariantViolation(f"Invalid occurrence date {ymd!r}")
    key = f"{parent}{SEPARATOR}{ITEM_MARKER}{item}{SEPARATOR}{day}"
    assert_well_formed(key)
    return key


def assert_well_formed(key: str) -> None:
    """Raise InvariantViolation for keys with a doubled item marker."""
    if has_doubled_marker(key):
        raise InvariantViolation(f"Doubled item marker in key {key!r}", key=key)


def has_doubled_marker(key: Optional[str]) -> bool:
    if not key:
        return False
    upper = key.upper()
    return "LI:LI:" in upper or "LIK:LIK:" in upper or "LI:LIK:" in upper


def parse_key(key: Optional[str]) -> Optional[ParsedKey]:
    """Parse a current-format key, None when the key is absent or legacy."""
    if not key:
        return None
    parts = str(key).strip().split(SEPARATOR)
    if len(parts) != 3:
        return None
    parent, item_part, day = parts
    if not parent or not item_part.startswith(ITEM_MARKER) or has_doubled_marker(key):
        return None
    item = item_part[len(ITEM_MARKER):]
    if not item or to_ymd(day) != day:
        return None
    return ParsedKey(parent_id=parent, item_id=item, ymd=day)


def item_identity_from_key(key: Optional[str]) -> Optional[str]:
    """
    Extract the stable item id from a key.

    Accepts legacy ``LIK:`` markers as well as the current ``LI:`` form
    so orphan sweeping still recognises records written by older passes.
    """
    if not key:
        return None
    for part in str(key).split(SEPARATOR):
        for marker in LEGACY_ITEM_MARKERS:
            if part.startswith(marker):
                item = part[len(marker):]
                while item.startswith(marker):
                    item = item[len(marker):]
                return item or None
    return None


def is_legacy_key(key: Optional[str]) -> bool:
    """Missing, unparseable or doubled-marker keys."""
    return parse_key(key) is None


def key_or_derived(
    properties: Mapping[str, Any],
    parent_id: str,
    stable_item_id: str,
    key_property: str = "forecast_key",
    date_property: str = "expected_date",
) -> Optional[str]:
    """
    Key used to compare an existing record against the desired set.

    Explicit current-format keys win. Records without one get a key
    derived from their own expected date; the derived key is only used
    for comparison and never written over an explicit key.
    """
    explicit = properties.get(key_property)
    if explicit and parse_key(explicit) is not None:
        return str(explicit)
    day = to_ymd(properties.get(date_property))
    if day is None:
        return None
    return build_key(parent_id, stable_item_id, day)
