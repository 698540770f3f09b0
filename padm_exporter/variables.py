"""PADM variable definitions and response parsing module.

This module handles:
- Describing which PADM variables to export and under which metric name
- Parsing the variables endpoint response into per-cycle results
- Converting PADM values (numeric strings, booleans, enum text) to floats
- Keeping the textual value for enum and info variables exported as a label

Supported response shapes:
- PADM envelope: {"data": [{"attributes": {"label", "value", "raw_value", "device_name"}}]}
- Flat mapping: {"temp1": 21.5, "temp2": 19.0}
- List of pairs: [{"name": "temp1", "value": 21.5}]
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

# Configure module logger
logger = logging.getLogger(__name__)

METRIC_PREFIX = "padm_"
METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
BUILTIN_LABELS = ("variable", "device", "stale")


class ParseError(Exception):
    """Exception raised when a variables response cannot be parsed."""
    pass


def metric_name_for(label: str) -> str:
    """Derive an exported metric name from a PADM variable label.

    Example:
        >>> metric_name_for("Return Air Temperature (C)")
        'padm_return_air_temperature_c'
    """
    slug = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return f"{METRIC_PREFIX}{slug or 'variable'}"


class VariableDefinition(BaseModel):
    """A configured PADM variable and how it is exported.

    Attributes:
        name: Variable label as reported by the PADM API
        metric: Exported metric name (derived from name when omitted)
        type: Prometheus metric type, gauge or counter
        unit: Optional unit tag, shown in the metric help text
        help: Optional help text
        device: Only match entries reported by this device
        states: Mapping of textual values to numbers (e.g. {"Off": 0, "On": 1})
        value_label: Export the textual value under this label (e.g. mode="Cooling")
        info: Info-style variable: value is always 1, the text is the label
    """

    model_config = ConfigDict(frozen=True)

    name: str
    metric: str = ""
    type: Literal["gauge", "counter"] = "gauge"
    unit: Optional[str] = None
    help: Optional[str] = None
    device: Optional[str] = None
    states: Dict[str, float] = {}
    value_label: Optional[str] = None
    info: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fill_metric(cls, data: Any) -> Any:
        # A bare string is shorthand for {"name": <string>}
        if isinstance(data, str):
            data = {"name": data}
        if not isinstance(data, dict):
            return data

        if data.get("info"):
            data = {**data, "value_label": data.get("value_label") or "version"}
        if not data.get("metric") and isinstance(data.get("name"), str):
            metric = metric_name_for(data["name"])
            if data.get("info") and not metric.endswith("_info"):
                metric += "_info"
            data = {**data, "metric": metric}
        return data

    @model_validator(mode="after")
    def _check_metric(self) -> "VariableDefinition":
        if not self.name.strip():
            raise ValueError("variable name must not be empty")
        if not METRIC_NAME_RE.match(self.metric):
            raise ValueError(f"invalid metric name: {self.metric!r}")
        if self.value_label is not None:
            if not LABEL_NAME_RE.match(self.value_label) or self.value_label.startswith("__"):
                raise ValueError(f"invalid label name: {self.value_label!r}")
            if self.value_label in BUILTIN_LABELS:
                raise ValueError(f"value_label must not be one of {', '.join(BUILTIN_LABELS)}")
        if self.info and self.type != "gauge":
            raise ValueError("info variables must be gauges")
        return self

    @property
    def family(self) -> str:
        """Metric family name as rendered (counters drop a _total suffix)."""
        if self.type == "counter" and self.metric.endswith("_total"):
            return self.metric[:-len("_total")]
        return self.metric

    @property
    def key(self) -> str:
        """Unique store key: the name, qualified by device when one is set."""
        if self.device:
            return f"{self.device}/{self.name}"
        return self.name

    @property
    def description(self) -> str:
        text = self.help or f"PADM variable '{self.name}'."
        if self.unit:
            text = f"{text} Unit: {self.unit}."
        return text


@dataclass
class PollCycleResult:
    """Variables obtained in a single fetch pass.

    Attributes:
        fetched_at: Unix timestamp of the fetch
        values: Parsed value per definition key
        devices: Device label per definition key (empty string when unknown)
        texts: Textual value per key, for definitions with a value_label
        failed: Definition keys that were absent or unparseable this cycle
    """
    fetched_at: float
    values: Dict[str, float] = field(default_factory=dict)
    devices: Dict[str, str] = field(default_factory=dict)
    texts: Dict[str, str] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def display_text(raw: Any, text: Any) -> str:
    """Textual form of a value, preferring the display value."""
    for candidate in (text, raw):
        if candidate not in (None, ""):
            return str(candidate).strip()
    return ""


def convert_value(definition: VariableDefinition, raw: Any, text: Any) -> Optional[float]:
    """Convert a PADM value to a float.

    The raw value is tried first, then the display value, then the
    definition's state mapping for textual values. Info variables are 1
    whenever the API reports any text.

    Returns:
        The numeric value, or None if the value cannot be converted
    """
    if definition.info:
        return 1.0 if display_text(raw, text) else None

    for candidate in (raw, text):
        number = _to_float(candidate)
        if number is not None:
            return number

    if isinstance(text, str) and text in definition.states:
        return float(definition.states[text])
    return None


Entry = Tuple[str, Any, Any, Optional[str]]


def _iter_entries(payload: Any) -> Iterator[Entry]:
    """Yield (label, raw_value, value, device) tuples from a response body."""
    if isinstance(payload, dict) and "data" in payload:
        data = payload["data"]
        if not isinstance(data, list):
            raise ParseError("'data' is not a list")
        for item in data:
            if not isinstance(item, dict):
                raise ParseError(f"Unexpected item in 'data': {item!r}")
            attrs = item.get("attributes", item.get("attribute"))
            if not isinstance(attrs, dict) or "label" not in attrs:
                logger.debug(f"Skipping variable entry without attributes: {item!r}")
                continue
            raw = attrs.get("raw_value")
            if raw in (None, ""):
                raw = attrs.get("value")
            yield attrs["label"], raw, attrs.get("value"), attrs.get("device_name")

    elif isinstance(payload, dict):
        for name, value in payload.items():
            yield name, value, value, None

    elif isinstance(payload, list):
        for item in payload:
            if not isinstance(item, dict) or "name" not in item:
                raise ParseError(f"Expected name/value object, got {item!r}")
            value = item.get("value")
            yield item["name"], value, value, item.get("device")

    else:
        raise ParseError(f"Unsupported response type: {type(payload).__name__}")


def parse_variables(
    payload: Any,
    definitions: Sequence[VariableDefinition],
    fetched_at: float,
) -> PollCycleResult:
    """Match a decoded variables response against the configured definitions.

    Returned names without a definition are ignored. Configured variables
    missing from the response, or whose value cannot be converted, are
    reported as failed for this cycle.

    Args:
        payload: Decoded JSON body of the variables endpoint
        definitions: Configured variable definitions
        fetched_at: Unix timestamp to stamp the result with

    Returns:
        PollCycleResult for this fetch

    Raises:
        ParseError: If the body does not have a recognised shape
    """
    by_name: Dict[str, List[VariableDefinition]] = {}
    for definition in definitions:
        by_name.setdefault(definition.name, []).append(definition)

    result = PollCycleResult(fetched_at=fetched_at)

    for label, raw, text, device in _iter_entries(payload):
        for definition in by_name.get(str(label), ()):
            if definition.device and definition.device != device:
                continue
            if definition.key in result.values:
                continue

            value = convert_value(definition, raw, text)
            if value is None:
                logger.warning(f"Could not parse value {text!r} for variable '{label}'")
                continue

            result.values[definition.key] = value
            result.devices[definition.key] = device or definition.device or ""
            if definition.value_label:
                result.texts[definition.key] = display_text(raw, text)

    result.failed = [d.key for d in definitions if d.key not in result.values]
    return result
