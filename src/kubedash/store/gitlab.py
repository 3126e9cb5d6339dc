#!/usr/bin/env python3
"""
KUBEDASH GITLAB CLIENT
----------------------
Thin wrapper over the GitLab REST v4 repository endpoints the pipeline needs:
read one file, list a directory tree, and push a multi-file commit.

Every call carries the configured per-call timeout. Transport and HTTP
failures are raised as GitLabError; a commit rejected because a file moved
underneath us is raised as GitLabConflict so callers can treat it as a
compare-and-swap miss.

Author: KubeDash Team
Date: 2026-10-19
"""

import base64
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional
from urllib.parse import quote

import requests

from kubedash.core.errors import GitLabError, GitLabConflict

logger = logging.getLogger("kubedash.gitlab")

# Messages GitLab returns (HTTP 400) when a commit action's precondition fails
CONFLICT_MARKERS = (
    "has changed since you started editing it",
    "A file with this name already exists",
    "A file with this name doesn't exist",
)


@dataclass
class RepositoryFile:
    path: str
    content: str
    blob_id: str
    last_commit_id: str


@dataclass
class TreeEntry:
    path: str
    name: str
    blob_id: str


class GitLabClient:
    """Repository access for one project and branch."""

    def __init__(self, base_url: str, token: str, project: str, branch: str = "main",
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.project = project
        self.branch = branch
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"PRIVATE-TOKEN": token})

    @property
    def _project_url(self) -> str:
        return f"{self.base_url}/api/v4/projects/{quote(str(self.project), safe='')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self._project_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise GitLabError(f"{method} {path} failed: {e}")
        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    def get_file(self, path: str) -> Optional[RepositoryFile]:
        """Returns the file at `path` on the branch, or None if it does not exist."""
        response = self._request("GET", f"/repository/files/{quote(path, safe='')}",
                                 params={"ref": self.branch})
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise GitLabError(f"Reading {path}: {self._error_message(response)}",
                              status=response.status_code)

        body = response.json()
        try:
            content = base64.b64decode(body["content"]).decode("utf-8")
        except (KeyError, ValueError) as e:
            raise GitLabError(f"Reading {path}: undecodable file content ({e})")
        return RepositoryFile(
            path=body.get("file_path", path),
            content=content,
            blob_id=body.get("blob_id", ""),
            last_commit_id=body.get("last_commit_id", ""),
        )

    def list_tree(self, path: str) -> List[TreeEntry]:
        """Lists blobs directly under `path`. A missing directory is an empty list."""
        entries = []
        page = "1"
        while page:
            response = self._request("GET", "/repository/tree", params={
                "path": path, "ref": self.branch, "per_page": 100, "page": page,
            })
            if response.status_code == 404:
                return []
            if response.status_code != 200:
                raise GitLabError(f"Listing {path}: {self._error_message(response)}",
                                  status=response.status_code)
            for item in response.json():
                if item.get("type") == "blob":
                    entries.append(TreeEntry(path=item["path"], name=item["name"], blob_id=item["id"]))
            page = response.headers.get("X-Next-Page", "")
        return entries

    def commit(self, message: str, actions: List[Dict[str, Any]]) -> str:
        """
        Pushes all `actions` (create/update/delete) as one commit and returns
        its id. GitLab applies the actions atomically.
        """
        payload = {"branch": self.branch, "commit_message": message, "actions": actions}
        response = self._request("POST", "/repository/commits", json=payload)
        if response.status_code in (200, 201):
            commit_id = response.json().get("id", "")
            logger.info(f"Committed {len(actions)} change(s) to {self.project}@{self.branch}: {commit_id[:12]}")
            return commit_id

        error = self._error_message(response)
        if response.status_code == 400 and any(marker in error for marker in CONFLICT_MARKERS):
            raise GitLabConflict(f"Commit rejected: {error}", status=400)
        raise GitLabError(f"Commit failed: {error}", status=response.status_code)
