#!/usr/bin/env python3
"""
KUBEDASH ERROR TAXONOMY
-----------------------
Every failure the reconciliation pipeline can surface. Each error carries the
affected key (dashboard UID, target name) so the report can expose it
structurally instead of as a free-text log line.

Fatal to the whole cycle:   DiscoveryError, TemplateError, AllocationError, CycleTimeout
Fatal to one descriptor:    RenderError
Fatal to one sink:          TargetError

Author: KubeDash Team
Date: 2026-10-19
"""

from typing import Optional


class KubeDashError(Exception):
    """Base class for all KubeDash failures."""

    fatal = False

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.key:
            return f"[{self.key}] {self.message}"
        return self.message


class ConfigError(KubeDashError):
    fatal = True


class DiscoveryError(KubeDashError):
    """Orchestrator unreachable or unauthorized. Nothing to reconcile."""
    fatal = True


class TemplateError(KubeDashError):
    """The default dashboard template could not be fetched."""
    fatal = True


class AllocationError(KubeDashError):
    """Identity registry unreadable, unwritable or inconsistent (fail-closed)."""
    fatal = True


class RegistryConflict(AllocationError):
    """Compare-and-swap lost against a concurrent writer. Retried by the allocator."""


class RenderError(KubeDashError):
    pass


class TargetError(KubeDashError):
    pass


class CycleTimeout(KubeDashError):
    fatal = True


class GitLabError(KubeDashError):
    """Transport-level failure talking to the GitLab REST API."""

    def __init__(self, message: str, status: Optional[int] = None, key: Optional[str] = None):
        super().__init__(message, key=key)
        self.status = status


class GitLabConflict(GitLabError):
    """GitLab rejected a commit because a file changed underneath us."""
