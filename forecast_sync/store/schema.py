"""
Schema negotiation for store writes.

The store rejects writes that name a property its schema does not know.
Instead of failing the whole write, the offending property is dropped
and the write resubmitted, a bounded number of times. Anything still
rejected after the bound surfaces as SchemaDriftError.
"""
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from forecast_sync.errors import SchemaDriftError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING_PROPERTY_RE = re.compile(r'Property\s+"([^"]+)"\s+does not exist', re.IGNORECASE)


def extract_unknown_property(body: Any) -> Optional[str]:
    """
    Name of the unknown property in a store rejection body.

    Looks at the structured error context first, then falls back to the
    human-readable message.
    """
    if not isinstance(body, dict):
        return _from_message(str(body or ""))

    for error in body.get("errors") or []:
        if not isinstance(error, dict):
            continue
        names = (error.get("context") or {}).get("propertyName") or []
        if names:
            return str(names[0])
        found = _from_message(error.get("message") or "")
        if found:
            return found

    return _from_message(body.get("message") or "")


def _from_message(message: str) -> Optional[str]:
    match = _MISSING_PROPERTY_RE.search(message)
    return match.group(1) if match else None


async def submit_with_schema_negotiation(
    submit: Callable[[Dict[str, Any]], Awaitable[T]],
    properties: Dict[str, Any],
    max_attempts: int = 5,
) -> Tuple[T, List[str]]:
    """
    Submit a write, dropping unknown properties until the store accepts it.

    Args:
        submit: Coroutine function performing the write with a property dict
        properties: Properties to write
        max_attempts: Total number of submissions allowed

    Returns:
        Tuple of (write result, names of dropped properties)

    Raises:
        SchemaDriftError: the store still rejects the write after
            max_attempts, or names a property that is not in the payload
    """
    payload = dict(properties)
    dropped: List[str] = []
    last_error: Optional[SchemaDriftError] = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = await submit(dict(payload))
        except SchemaDriftError as e:
            last_error = e
            name = e.property_name
            if not name or name not in payload:
                raise
            logger.warning(
                f"Store rejected unknown property '{name}' "
                f"(attempt {attempt}/{max_attempts}), resubmitting without it"
            )
            payload.pop(name)
            dropped.append(name)
            continue
        return result, dropped

    raise SchemaDriftError(
        last_error.property_name if last_error else None,
        f"Write still rejected after {max_attempts} attempts; dropped {dropped}",
        object_type=last_error.object_type if last_error else None,
        object_id=last_error.object_id if last_error else None,
    )
