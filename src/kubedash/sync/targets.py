#!/usr/bin/env python3
"""
KUBEDASH SYNC TARGETS
---------------------
One contract, two sinks:

    list()            -> {key: fingerprint}
    put(document)     -> None | TargetError
    delete(key)       -> None | TargetError
    fingerprint(doc)  -> the value list() would report once doc is stored

`apply()` turns a SyncPlan into operations with bounded retry. Whether
deletions are executed is a per-instance `prune` flag, not a subclass
concern: an append-only target reports them as suppressed.

Author: KubeDash Team
Date: 2026-10-19
"""

import hashlib
import logging
from typing import Dict, Iterable, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubedash.core.errors import TargetError, GitLabError
from kubedash.core.models import DashboardDocument, SyncPlan, TargetReport, ErrorRecord, sha256_hex
from kubedash.core.retry import Deadline, retry
from kubedash.sync.manifest import (
    MarkerPolicy, ManifestExporter, build_configmap, UID_ANNOTATION, MANAGED_BY_LABEL, MANAGED_BY_VALUE
)

logger = logging.getLogger("kubedash.targets")


def compute_plan(desired: Dict[str, DashboardDocument],
                 existing: Dict[str, str],
                 fingerprint,
                 held: Iterable[str] = ()) -> SyncPlan:
    """
    Diffs the desired documents against a sink's {key: fingerprint} view.
    Keys in `held` (render failed this cycle) are never scheduled for deletion.
    """
    held = set(held)
    plan = SyncPlan()
    for key in sorted(desired):
        if key not in existing:
            plan.to_create.append(key)
        elif existing[key] != fingerprint(desired[key]):
            plan.to_update.append(key)
        else:
            plan.unchanged.append(key)
    for key in sorted(set(existing) - set(desired)):
        if key in held:
            plan.held.append(key)
        else:
            plan.to_delete.append(key)
    return plan


class SyncTarget:
    """Base sink. Subclasses implement list/put/delete/fingerprint."""

    def __init__(self, name: str, prune: bool = False, retry_attempts: int = 3, retry_backoff: float = 0.5):
        self.name = name
        self.prune = prune
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def list(self) -> Dict[str, str]:
        raise NotImplementedError

    def put(self, document: DashboardDocument):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def fingerprint(self, document: DashboardDocument) -> str:
        return document.digest

    def _retry(self, operation, description: str, deadline: Optional[Deadline] = None):
        return retry(operation, (TargetError,), attempts=self.retry_attempts, backoff=self.retry_backoff,
                     description=f"{self.name}: {description}", deadline=deadline)

    def plan(self, desired: Dict[str, DashboardDocument], held: Iterable[str] = (),
             deadline: Optional[Deadline] = None) -> SyncPlan:
        existing = self._retry(self.list, "list", deadline)
        return compute_plan(desired, existing, self.fingerprint, held)

    def apply(self, plan: SyncPlan, desired: Dict[str, DashboardDocument],
              deadline: Optional[Deadline] = None) -> TargetReport:
        """
        Executes the plan one document at a time. A failed operation is
        retried, then recorded; the remaining operations still run.
        """
        report = TargetReport(name=self.name, prune=self.prune, plan=plan)
        operations = [("create", key) for key in plan.to_create] + [("update", key) for key in plan.to_update]
        if self.prune:
            operations += [("delete", key) for key in plan.to_delete]
        else:
            report.suppressed_deletes = list(plan.to_delete)

        for verb, key in operations:
            if deadline is not None:
                deadline.check(f"{self.name} apply")
            try:
                if verb == "delete":
                    self._retry(lambda k=key: self.delete(k), f"delete {key}", deadline)
                    report.deleted.append(key)
                else:
                    self._retry(lambda d=desired[key]: self.put(d), f"{verb} {key}", deadline)
                    (report.created if verb == "create" else report.updated).append(key)
            except TargetError as e:
                logger.error(f"{self.name}: {verb} {key} failed: {e.message}")
                report.errors.append(ErrorRecord.from_exception(e, key=key))

        if report.suppressed_deletes:
            logger.info(f"{self.name}: append-only, suppressed {len(report.suppressed_deletes)} deletion(s)")
        return report

    def sync(self, desired: Dict[str, DashboardDocument], held: Iterable[str] = (),
             deadline: Optional[Deadline] = None, dry_run: bool = False) -> TargetReport:
        """list + diff + apply. Never raises for sink failures; they land in the report."""
        try:
            plan = self.plan(desired, held, deadline)
        except TargetError as e:
            logger.error(f"{self.name}: listing failed: {e.message}")
            return TargetReport(name=self.name, prune=self.prune,
                                errors=[ErrorRecord.from_exception(e, key=self.name)])

        logger.info(f"{self.name}: create={len(plan.to_create)} update={len(plan.to_update)} "
                    f"delete={len(plan.to_delete)} unchanged={len(plan.unchanged)}")
        if dry_run:
            report = TargetReport(name=self.name, prune=self.prune, plan=plan)
            if not self.prune:
                report.suppressed_deletes = list(plan.to_delete)
            return report
        return self.apply(plan, desired, deadline)


class ClusterTarget(SyncTarget):
    """Dashboards as labeled ConfigMaps in one namespace, via the CoreV1 API."""

    def __init__(self, core_api: client.CoreV1Api, policy: MarkerPolicy, prune: bool = True,
                 request_timeout: float = 10.0, **kwargs):
        super().__init__(kwargs.pop("name", "cluster"), prune=prune, **kwargs)
        self.core_api = core_api
        self.policy = policy
        self.request_timeout = request_timeout

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, _request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            raise TargetError(f"{description}: HTTP {e.status} {e.reason}")
        except urllib3.exceptions.HTTPError as e:
            raise TargetError(f"{description}: {e}")

    def list(self) -> Dict[str, str]:
        response = self._call("list ConfigMaps", self.core_api.list_namespaced_config_map,
                              self.policy.namespace, label_selector=self.policy.managed_selector)
        records = {}
        for item in response.items or []:
            annotations = item.metadata.annotations or {}
            uid = annotations.get(UID_ANNOTATION)
            if not uid:
                logger.warning(f"{self.name}: ConfigMap {item.metadata.name} has no {UID_ANNOTATION}; ignoring")
                continue
            payload = (item.data or {}).get(self.policy.data_key(uid), "")
            records[uid] = sha256_hex(payload)
        return records

    def put(self, document: DashboardDocument):
        body = build_configmap(document, self.policy)
        name = body["metadata"]["name"]
        try:
            self.core_api.create_namespaced_config_map(self.policy.namespace, body,
                                                       _request_timeout=self.request_timeout)
            return
        except ApiException as e:
            if e.status != 409:
                raise TargetError(f"create ConfigMap {name}: HTTP {e.status} {e.reason}", key=document.key)
        except urllib3.exceptions.HTTPError as e:
            raise TargetError(f"create ConfigMap {name}: {e}", key=document.key)

        # Already exists: last writer wins
        self._call(f"replace ConfigMap {name}", self.core_api.replace_namespaced_config_map,
                   name, self.policy.namespace, body)

    def delete(self, key: str):
        name = self.policy.object_name(key)
        try:
            self.core_api.delete_namespaced_config_map(name, self.policy.namespace,
                                                       _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return
            raise TargetError(f"delete ConfigMap {name}: HTTP {e.status} {e.reason}", key=key)
        except urllib3.exceptions.HTTPError as e:
            raise TargetError(f"delete ConfigMap {name}: {e}", key=key)


def git_blob_sha(content: str) -> str:
    """The object id git (and GitLab's tree API) reports for a blob with this content."""
    data = content.encode("utf-8")
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class RepositoryTarget(SyncTarget):
    """
    Dashboards as ConfigMap manifests under `dashboard_path` in the GitLab
    repository. All writes of one cycle go out as a single commit.

    The directory may hold files kubedash did not write (a kustomization,
    hand-made manifests). The tree API carries no metadata, so deletion
    candidates are read back and only those carrying the managed-by label
    and a matching uid annotation are kept in the plan.
    """

    def __init__(self, gitlab, policy: MarkerPolicy, dashboard_path: str, prune: bool = False, **kwargs):
        super().__init__(kwargs.pop("name", "repository"), prune=prune, **kwargs)
        self.gitlab = gitlab
        self.policy = policy
        self.dashboard_path = dashboard_path.strip("/")
        self.exporter = ManifestExporter()

    def file_path(self, key: str) -> str:
        return f"{self.dashboard_path}/{key}.yaml"

    def render_manifest(self, document: DashboardDocument) -> str:
        return self.exporter.export(build_configmap(document, self.policy))

    def fingerprint(self, document: DashboardDocument) -> str:
        return git_blob_sha(self.render_manifest(document))

    def list(self) -> Dict[str, str]:
        try:
            entries = self.gitlab.list_tree(self.dashboard_path)
        except GitLabError as e:
            raise TargetError(f"list {self.dashboard_path}: {e.message}")
        return {entry.name[:-len(".yaml")]: entry.blob_id for entry in entries if entry.name.endswith(".yaml")}

    def owns(self, key: str) -> bool:
        """True if the file for `key` is a manifest this sink wrote."""
        path = self.file_path(key)
        try:
            found = self.gitlab.get_file(path)
        except GitLabError as e:
            raise TargetError(f"read {path}: {e.message}", key=key)
        if found is None:
            return False
        try:
            manifest = YAML(typ="safe").load(found.content)
        except YAMLError:
            return False
        if not isinstance(manifest, dict) or not isinstance(manifest.get("metadata"), dict):
            return False
        labels = manifest["metadata"].get("labels") or {}
        annotations = manifest["metadata"].get("annotations") or {}
        return labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE and annotations.get(UID_ANNOTATION) == key

    def plan(self, desired: Dict[str, DashboardDocument], held: Iterable[str] = (),
             deadline: Optional[Deadline] = None) -> SyncPlan:
        plan = super().plan(desired, held, deadline)
        foreign = [key for key in plan.to_delete
                   if not self._retry(lambda k=key: self.owns(k), f"read {key}", deadline)]
        if foreign:
            logger.info(f"{self.name}: ignoring {len(foreign)} file(s) not written by kubedash: {', '.join(foreign)}")
            plan.to_delete = [key for key in plan.to_delete if key not in foreign]
        return plan

    def _action(self, verb: str, key: str, desired: Dict[str, DashboardDocument]) -> Dict[str, str]:
        action = {"action": verb, "file_path": self.file_path(key)}
        if verb != "delete":
            action["content"] = self.render_manifest(desired[key])
        return action

    def _commit(self, actions, message: str):
        try:
            self.gitlab.commit(message, actions)
        except GitLabError as e:
            raise TargetError(f"commit: {e.message}")

    def put(self, document: DashboardDocument):
        """
        Single-document commit for callers outside a cycle. Lists the tree
        on every call; `apply` batches the cycle's writes and never uses it.
        """
        verb = "update" if document.key in self.list() else "create"
        self._commit([self._action(verb, document.key, {document.key: document})],
                     f"kubedash: {verb} dashboard {document.key}")

    def delete(self, key: str):
        self._commit([self._action("delete", key, {})], f"kubedash: delete dashboard {key}")

    def apply(self, plan: SyncPlan, desired: Dict[str, DashboardDocument],
              deadline: Optional[Deadline] = None) -> TargetReport:
        report = TargetReport(name=self.name, prune=self.prune, plan=plan)
        deletes = list(plan.to_delete) if self.prune else []
        if not self.prune:
            report.suppressed_deletes = list(plan.to_delete)
            if plan.to_delete:
                logger.info(f"{self.name}: append-only, suppressed {len(plan.to_delete)} deletion(s)")

        actions = ([self._action("create", k, desired) for k in plan.to_create]
                   + [self._action("update", k, desired) for k in plan.to_update]
                   + [self._action("delete", k, desired) for k in deletes])
        if not actions:
            return report

        message = (f"kubedash: sync dashboards ({len(plan.to_create)} created, "
                   f"{len(plan.to_update)} updated, {len(deletes)} deleted)")
        try:
            if deadline is not None:
                deadline.check(f"{self.name} apply")
            self._retry(lambda: self._commit(actions, message), "commit", deadline)
        except TargetError as e:
            logger.error(f"{self.name}: commit failed: {e.message}")
            report.errors.append(ErrorRecord.from_exception(e, key=self.name))
            return report

        report.created = list(plan.to_create)
        report.updated = list(plan.to_update)
        report.deleted = deletes
        return report
