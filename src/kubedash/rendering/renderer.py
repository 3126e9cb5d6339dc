#!/usr/bin/env python3
"""
KUBEDASH RENDERER
-----------------
Turns (descriptor, identity, template) into a DashboardDocument.

Placeholders use the form ${dashboard.<field>} and come from a closed set.
Anything else that looks template-ish (Grafana variables such as
${namespace}, legend formats such as {{pod}}, regex literals in queries)
passes through untouched. The result is parsed, validated, and re-emitted as
canonical JSON so identical inputs always produce identical bytes.

Author: KubeDash Team
Date: 2026-10-19
"""

import re
import json
import logging
from typing import Dict, Any

from kubedash.core.errors import RenderError
from kubedash.core.models import ServiceDescriptor, DashboardIdentity, DashboardDocument
from kubedash.rendering.validator import DashboardValidator

logger = logging.getLogger("kubedash.renderer")

PLACEHOLDER = re.compile(r"\$\{dashboard\.([^}]*)\}")

# Substituted as bare JSON numbers; everything else is substituted JSON-string-escaped
NUMERIC_FIELDS = {"numericId"}


class DashboardRenderer:

    def __init__(self, validator: DashboardValidator = None):
        self.validator = validator or DashboardValidator()

    @staticmethod
    def substitutions(descriptor: ServiceDescriptor, identity: DashboardIdentity) -> Dict[str, Any]:
        return {
            "name": descriptor.name,
            "namespace": descriptor.namespace,
            "title": descriptor.title,
            "uid": identity.uid,
            "numericId": identity.numeric_id,
            "selectorPrefix": descriptor.selector_prefix,
        }

    def render(self, descriptor: ServiceDescriptor, identity: DashboardIdentity, template: str) -> DashboardDocument:
        values = self.substitutions(descriptor, identity)
        key = identity.uid

        def substitute(match):
            field = match.group(1).strip()
            if field not in values:
                raise RenderError(f"Template references unknown placeholder '${{dashboard.{field}}}'", key=key)
            value = values[field]
            if field in NUMERIC_FIELDS:
                return str(int(value))
            # Escape for a JSON string context without the surrounding quotes
            return json.dumps(str(value))[1:-1]

        text = PLACEHOLDER.sub(substitute, template)

        try:
            doc = json.loads(text)
        except json.JSONDecodeError as e:
            raise RenderError(f"Rendered dashboard is not valid JSON: {e.msg} (line {e.lineno}, column {e.colno})",
                              key=key)

        ok, message = self.validator.validate(doc, expected_uid=identity.uid)
        if not ok:
            raise RenderError(message, key=key)

        content = json.dumps(doc, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        title = doc.get("title", descriptor.title)
        logger.debug(f"Rendered {key} ({len(content)} bytes)")
        return DashboardDocument(descriptor=descriptor, identity=identity, title=title, content=content)
