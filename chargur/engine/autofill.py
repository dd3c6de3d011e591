"""
Auto-fill payload normalization.

A complete event may carry auto-fill data for the current stage only, or
for several stages at once. The payload says which through an explicit
`format` field:

    {"format": "multi-stage", "feature-planning": {...}, "structure-flow": {...}}
    {"format": "single-stage", "appName": "Recipe Hub"}
    {"appName": "Recipe Hub"}                       # no format: single-stage

Field names are never compared against stage ids to guess the format.
"""

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

FORMAT_KEY = "format"
MULTI_STAGE = "multi-stage"
SINGLE_STAGE = "single-stage"


def normalize_auto_fill(data: dict[str, Any], stage_id: str) -> dict[str, dict[str, Any]]:
    """
    Map an auto-fill payload to {stage_id: fields}.

    Args:
        data: autoFillData from a complete event
        stage_id: Stage the conversation belongs to

    Returns:
        Stage-keyed fields; empty when there is nothing to apply
    """
    if not data:
        return {}

    fmt = data.get(FORMAT_KEY, SINGLE_STAGE)
    fields = {k: v for k, v in data.items() if k != FORMAT_KEY}

    if fmt == MULTI_STAGE:
        result: dict[str, dict[str, Any]] = {}
        for key, value in fields.items():
            if isinstance(value, dict) and value:
                result[key] = dict(value)
            else:
                logger.warning(f"Skipping multi-stage auto-fill entry {key!r}: not a non-empty object")
        return result

    if fmt != SINGLE_STAGE:
        logger.warning(f"Unknown auto-fill format {fmt!r}, applying to stage {stage_id}")

    return {stage_id: fields} if fields else {}


@dataclass(frozen=True)
class AutoFillUpdate:
    """Payload of an AUTO_FILL event."""

    stage_id: str  # stage of the conversation
    fields: dict[str, Any]  # fields for stage_id, may be empty
    stages: dict[str, dict[str, Any]]  # every stage the payload touches

    @classmethod
    def from_payload(cls, data: dict[str, Any], stage_id: str) -> "AutoFillUpdate | None":
        """Build the update, or None when the payload carries nothing."""
        stages = normalize_auto_fill(data, stage_id)
        if not stages:
            return None
        return cls(stage_id=stage_id, fields=stages.get(stage_id, {}), stages=stages)
