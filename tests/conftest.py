import pytest
from typing import Dict, Optional, Set

from kubedash.core.errors import TargetError
from kubedash.core.models import ServiceDescriptor, sha256_hex
from kubedash.core.engine import Reconciler
from kubedash.identity.registry import MemoryRegistryStore
from kubedash.store.gitlab import RepositoryFile
from kubedash.sync.targets import SyncTarget

# Minimal but complete dashboard template
TEMPLATE = """{
  "id": ${dashboard.numericId},
  "uid": "${dashboard.uid}",
  "title": "${dashboard.title}",
  "tags": ["${dashboard.namespace}"],
  "panels": [
    {
      "id": 1,
      "type": "timeseries",
      "title": "Requests",
      "targets": [
        {"expr": "rate(http_requests_total{namespace=\\"${dashboard.namespace}\\", pod=~\\"${dashboard.name}-.*\\"}[5m])",
         "legendFormat": "{{pod}}"}
      ]
    }
  ]
}
"""

TEMPLATE_PATH = "templates/dashboard.json"


class FakeDiscovery:
    def __init__(self, descriptors=(), error: Optional[Exception] = None):
        self.descriptors: Set[ServiceDescriptor] = set(descriptors)
        self.error = error
        self.calls = 0

    def discover(self):
        self.calls += 1
        if self.error:
            raise self.error
        return set(self.descriptors)


class FakeTemplateSource:
    """Stands in for GitLabClient.get_file."""

    def __init__(self, files: Optional[Dict[str, str]] = None, error: Optional[Exception] = None):
        self.files = dict(files or {TEMPLATE_PATH: TEMPLATE})
        self.error = error

    def get_file(self, path):
        if self.error:
            raise self.error
        if path not in self.files:
            return None
        return RepositoryFile(path=path, content=self.files[path], blob_id="b", last_commit_id="c")


class MemoryTarget(SyncTarget):
    """In-memory sink keyed by uid, fingerprinting with the document digest."""

    def __init__(self, name: str, prune: bool, fail_keys=(), fail_list: bool = False):
        super().__init__(name, prune=prune, retry_attempts=2, retry_backoff=0)
        self.store: Dict[str, str] = {}
        self.fail_keys = set(fail_keys)
        self.fail_list = fail_list
        self.puts = []
        self.deletes = []

    def list(self):
        if self.fail_list:
            raise TargetError(f"{self.name} unreachable")
        return {key: sha256_hex(content) for key, content in self.store.items()}

    def put(self, document):
        if document.key in self.fail_keys:
            raise TargetError(f"{self.name} rejected {document.key}", key=document.key)
        self.puts.append(document.key)
        self.store[document.key] = document.content

    def delete(self, key):
        self.deletes.append(key)
        self.store.pop(key, None)


@pytest.fixture
def descriptors():
    return {ServiceDescriptor("internal", "api"), ServiceDescriptor("internal", "worker")}


@pytest.fixture
def cluster():
    return MemoryTarget("cluster", prune=True)


@pytest.fixture
def repository():
    return MemoryTarget("repository", prune=False)


@pytest.fixture
def registry_store():
    return MemoryRegistryStore()


@pytest.fixture
def make_reconciler(cluster, repository, registry_store):
    def factory(discovery, source=None, targets=None, **kwargs):
        return Reconciler(
            discovery,
            registry_store,
            source or FakeTemplateSource(),
            targets if targets is not None else [cluster, repository],
            template_path=TEMPLATE_PATH,
            **kwargs,
        )
    return factory
