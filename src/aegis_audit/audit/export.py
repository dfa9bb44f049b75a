"""Trail export - JSON, CSV and XML renderings of event lists."""

import csv
import io
import json
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Sequence

from aegis_audit.audit.schemas import AuditEvent
from aegis_audit.common.exceptions import ValidationError


EXPORT_FORMATS = ("json", "csv", "xml")

CSV_COLUMNS = [
    "id", "timestamp", "trail_id", "sequence", "type", "severity",
    "actor_id", "actor_type", "resource_id", "resource_type",
    "action", "outcome", "details", "previous_hash", "hash", "signature",
]


def _flat_row(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "timestamp": event.timestamp.isoformat(),
        "trail_id": event.trail_id,
        "sequence": event.sequence,
        "type": event.type.value,
        "severity": event.severity.value,
        "actor_id": event.actor.id,
        "actor_type": event.actor.type,
        "resource_id": event.resource.id,
        "resource_type": event.resource.type,
        "action": event.action,
        "outcome": event.outcome,
        "details": json.dumps(event.details, sort_keys=True, default=str),
        "previous_hash": event.previous_hash,
        "hash": event.hash,
        "signature": event.signature or "",
    }


def to_json(events: Sequence[AuditEvent]) -> str:
    return json.dumps([e.model_dump(mode="json") for e in events], indent=2)


def to_csv(events: Sequence[AuditEvent]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for event in events:
        writer.writerow(_flat_row(event))
    return buffer.getvalue()


# Caller-defined mappings; their keys are not safe as tag names
_JSON_FIELDS = ("details", "attributes")


def _append_xml(parent: ET.Element, key: str, value: Any) -> None:
    child = ET.SubElement(parent, key)
    if key in _JSON_FIELDS:
        child.text = json.dumps(value, sort_keys=True, default=str)
    elif isinstance(value, dict):
        for k, v in value.items():
            _append_xml(child, str(k), v)
    elif isinstance(value, list):
        for item in value:
            _append_xml(child, "item", item)
    elif value is not None:
        child.text = str(value)


def to_xml(events: Sequence[AuditEvent]) -> str:
    root = ET.Element("auditEvents", count=str(len(events)))
    for event in events:
        node = ET.SubElement(root, "event", id=event.id)
        for key, value in event.model_dump(mode="json").items():
            if key == "id":
                continue
            _append_xml(node, key, value)
    return ET.tostring(root, encoding="unicode", xml_declaration=True)


def export_events(events: List[AuditEvent], fmt: str) -> str:
    """Render events in one of EXPORT_FORMATS.
    
    Raises:
        ValidationError: For unsupported formats
    """
    fmt = fmt.lower()
    if fmt == "json":
        return to_json(events)
    if fmt == "csv":
        return to_csv(events)
    if fmt == "xml":
        return to_xml(events)
    raise ValidationError(
        f"Unsupported export format: {fmt}",
        details={"supported": list(EXPORT_FORMATS)},
    )
