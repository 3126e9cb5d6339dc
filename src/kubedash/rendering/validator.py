#!/usr/bin/env python3
"""
KUBEDASH VALIDATOR - The Judge
------------------------------
Final gate on a rendered dashboard before it may be handed to the sinks.
Checks the structural minimum Grafana's provisioning loader relies on; panel
semantics and query correctness are Grafana's business, not ours.

Author: KubeDash Team
Date: 2026-10-19
"""

from typing import Any, Tuple, Optional
import logging

logger = logging.getLogger("kubedash.validator")


class DashboardValidator:
    """
    Enforces schema integrity on rendered dashboards.
    Returns (ok, message) like a pre-flight checklist rather than raising,
    so the renderer decides how to surface the failure.
    """

    def __init__(self):
        # Top-level fields every provisioned dashboard must carry, with their types
        self.required_fields = {"uid": str, "title": str}
        self.list_fields = ["panels", "links"]
        self.object_fields = ["templating", "time", "annotations"]

    def validate(self, doc: Any, expected_uid: Optional[str] = None) -> Tuple[bool, str]:
        if not isinstance(doc, dict):
            return False, "Rendered dashboard is not a JSON object."

        # --- TEST 1: Identity fields ---
        for name, expected_type in self.required_fields.items():
            if name not in doc:
                return False, f"Missing required top-level field '{name}'."
            if not isinstance(doc[name], expected_type) or not doc[name]:
                return False, f"Field '{name}' must be a non-empty {expected_type.__name__}."

        if expected_uid is not None and doc["uid"] != expected_uid:
            return False, f"Dashboard uid '{doc['uid']}' does not match allocated uid '{expected_uid}'."

        if "id" in doc and doc["id"] is not None and (isinstance(doc["id"], bool) or not isinstance(doc["id"], int)):
            return False, "Field 'id' must be an integer or null."

        # --- TEST 2: Container shapes ---
        for name in self.list_fields:
            if name in doc and not isinstance(doc[name], list):
                return False, f"Field '{name}' must be a list."
        for name in self.object_fields:
            if name in doc and not isinstance(doc[name], dict):
                return False, f"Field '{name}' must be an object."

        return self._validate_panels(doc.get("panels", []))

    def _validate_panels(self, panels, path: str = "panels") -> Tuple[bool, str]:
        for index, panel in enumerate(panels):
            where = f"{path}[{index}]"
            if not isinstance(panel, dict):
                return False, f"{where} must be an object."
            # Row panels nest their children
            nested = panel.get("panels")
            if nested is not None:
                if not isinstance(nested, list):
                    return False, f"{where}.panels must be a list."
                ok, err = self._validate_panels(nested, path=f"{where}.panels")
                if not ok:
                    return False, err
        return True, "Dashboard passes structural integrity check."
