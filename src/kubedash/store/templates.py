#!/usr/bin/env python3
"""
KUBEDASH TEMPLATE STORE
-----------------------
Fetches the default dashboard template plus any per-service overrides from
the repository, once per cycle.

Author: KubeDash Team
Date: 2026-10-19
"""

import logging
from typing import Dict, Iterable, Optional

from kubedash.core.errors import GitLabError, TemplateError
from kubedash.core.models import ServiceDescriptor

logger = logging.getLogger("kubedash.templates")


class TemplateStore:
    """
    Reads templates through any source exposing `get_file(path)` (the
    GitLabClient in production). Results are cached for the life of the
    store, which the engine creates fresh for every cycle.
    """

    def __init__(self, source, default_path: str):
        self.source = source
        self.default_path = default_path
        self._cache: Dict[str, str] = {}

    def fetch(self, path: str) -> str:
        if path in self._cache:
            return self._cache[path]
        try:
            found = self.source.get_file(path)
        except GitLabError as e:
            raise TemplateError(f"Template {path} unreadable: {e.message}", key=path)
        if found is None:
            raise TemplateError(f"Template {path} not found", key=path)
        self._cache[path] = found.content
        return found.content

    def default(self) -> str:
        return self.fetch(self.default_path)

    def collect(self, descriptors: Iterable[ServiceDescriptor]) -> Dict[str, TemplateError]:
        """
        Prefetches the default template and every distinct override. The
        default is mandatory (TemplateError propagates); a broken override
        is returned keyed by path so only the services using it fail.
        """
        self.default()
        failures: Dict[str, TemplateError] = {}
        overrides = sorted({d.template for d in descriptors if d.template and d.template != self.default_path})
        for path in overrides:
            try:
                self.fetch(path)
            except TemplateError as e:
                logger.warning(f"Template override unavailable: {e}")
                failures[path] = e
        return failures

    def for_descriptor(self, descriptor: ServiceDescriptor) -> Optional[str]:
        return self._cache.get(descriptor.template or self.default_path)
