# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Reconcile remote and local flow lists.

Rules for a flow present on both sides:
- remote fields override local ones, except the fields below
- device metadata (createdOnDevice, lastModifiedOnDevice) stays local
- a global pin set remotely wins; otherwise the local pin is kept
- the `flow` graph comes from whichever side has the later updatedAt
- the `deleted` flag is always the local one

Remote-only flows are adopted with defaults filled in; local-only flows
are kept as they are.
"""

from typing import Any, Dict, List

from visualflow.core.logging import get_logger
from visualflow.persistence.models import Flow, PinLevel, parse_iso

logger = get_logger(__name__)

DEVICE_FIELDS = ("createdOnDevice", "lastModifiedOnDevice")


def _is_newer(candidate: Dict[str, Any], reference: Dict[str, Any]) -> bool:
    try:
        return parse_iso(candidate["updatedAt"]) > parse_iso(reference["updatedAt"])
    except (KeyError, TypeError, ValueError):
        return False


def merge_pair(remote: Dict[str, Any], local: Dict[str, Any]) -> Dict[str, Any]:
    """Merge one flow present on both sides (stored documents)"""
    merged = {**local, **remote}

    for key in DEVICE_FIELDS:
        if key in local:
            merged[key] = local[key]
        else:
            merged.pop(key, None)

    if remote.get("pinLevel") == PinLevel.GLOBAL.value:
        merged["pinLevel"] = PinLevel.GLOBAL.value
        merged["pinnedAt"] = remote.get("pinnedAt")
        merged["pinnedBy"] = remote.get("pinnedBy")
    else:
        merged["pinLevel"] = local.get("pinLevel") or PinLevel.NONE.value
        merged["pinnedAt"] = local.get("pinnedAt")
        merged["pinnedBy"] = local.get("pinnedBy")

    merged["flow"] = remote.get("flow") if _is_newer(remote, local) else local.get("flow")
    merged["deleted"] = bool(local.get("deleted", False))
    merged["deletedAt"] = local.get("deletedAt")

    return {k: v for k, v in merged.items() if v is not None}


def merge_flows(remote: List[Dict[str, Any]], local: List[Flow]) -> List[Flow]:
    """
    Merge the remote flow list into the local one.

    Args:
        remote: Raw documents from the backend
        local: Flows from the local store (deleted ones included)

    Returns:
        Remote-side flows in remote order, followed by local-only flows
    """
    local_by_id = {f.id: f.to_document() for f in local}
    merged: List[Flow] = []
    seen = set()

    for remote_doc in remote:
        flow_id = remote_doc.get("id")
        if not flow_id or flow_id in seen:
            continue
        seen.add(flow_id)

        local_doc = local_by_id.get(flow_id)
        if local_doc is not None:
            document = merge_pair(remote_doc, local_doc)
        else:
            document = {k: v for k, v in remote_doc.items() if v is not None}
            document.setdefault("version", "1.0.0")
            document.setdefault("tags", [])
            document["deleted"] = False

        try:
            merged.append(Flow.from_document(document))
        except ValueError as e:
            logger.warning("Skipping malformed remote flow", extra={"flow_id": flow_id, "error": str(e)})
            if local_doc is not None:
                merged.append(Flow.from_document(local_doc))

    merged.extend(f for f in local if f.id not in seen)
    return merged
