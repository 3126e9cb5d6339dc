#!/usr/bin/env python3
"""
KUBEDASH CLI - Scheduler Entry Point
------------------------------------
Invoked by the CronJob once per cycle. The exit status is the contract
with the scheduler:

    0  success (render errors alone still count as success)
    1  partial failure (at least one sink reported errors)
    2  fatal failure. Aborts before the sink phase write nothing; a deadline
       hit while sinks run can leave some of their writes applied, and the
       next cycle converges from there.

Author: KubeDash Team
Date: 2026-10-19
"""

import sys
import logging
import argparse
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from kubedash.cli.formatter import ReportFormatter, console
from kubedash.core.config import Settings
from kubedash.core.engine import Reconciler
from kubedash.core.errors import KubeDashError
from kubedash.identity.registry import FileRegistryStore, RepositoryRegistryStore, RegistryStore
from kubedash.store.gitlab import GitLabClient

VERSION = "1.0.0"

EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False):
    """Routes all kubedash loggers to stderr through Rich, keeping stdout for reports."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # The API clients are chatty at DEBUG
    for noisy in ("urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class KubeDashCLI:
    """
    CLI wrapper that translates scheduler invocations into Engine actions.
    """

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="kubedash",
            description="KubeDash - Grafana dashboard reconciler for Kubernetes workloads",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.formatter = ReportFormatter()
        self._setup_args()

    def _setup_args(self):
        self.parser.add_argument("-v", "--version", action="version", version=f"kubedash v{VERSION}")
        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        common = argparse.ArgumentParser(add_help=False)
        common.add_argument("-c", "--config", help="YAML settings file (KUBEDASH_* env vars override it)")
        common.add_argument("--json", action="store_true", help="Emit a machine-readable JSON report")
        common.add_argument("--verbose", action="store_true", help="Debug logging")

        reconcile_parser = subparsers.add_parser("reconcile", parents=[common],
                                                 help="Run one reconciliation cycle")
        reconcile_parser.add_argument("--dry-run", action="store_true",
                                      help="Compute the plan without allocating or writing anything")

        subparsers.add_parser("plan", parents=[common], help="Alias for 'reconcile --dry-run'")
        subparsers.add_parser("registry", parents=[common], help="Show the persisted identity registry")

    def print_header(self, subtitle: str):
        console.print(Panel.fit(
            f"[bold cyan]KubeDash v{VERSION}[/bold cyan]",
            title=f"[bold white]{subtitle}[/bold white]",
            border_style="cyan"
        ))

    def _reconcile(self, args: argparse.Namespace, dry_run: bool) -> int:
        settings = Settings.load(args.config)
        reconciler = Reconciler.from_settings(settings)
        report = reconciler.reconcile(dry_run=dry_run)

        if args.json:
            self.formatter.print_json(report.to_dict())
        else:
            self.formatter.print_report(report)
        return report.exit_code

    @staticmethod
    def _registry_store(settings: Settings) -> RegistryStore:
        if settings.registry_file:
            return FileRegistryStore(settings.registry_file)
        settings.validate()
        gitlab = GitLabClient(settings.gitlab_url, settings.gitlab_token, settings.repository,
                              branch=settings.branch, timeout=settings.request_timeout)
        return RepositoryRegistryStore(gitlab, settings.registry_path)

    def _show_registry(self, args: argparse.Namespace) -> int:
        settings = Settings.load(args.config)
        registry = self._registry_store(settings).load().registry

        if args.json:
            self.formatter.print_json({
                "generation": registry.generation,
                "high_water": registry.high_water,
                "identities": {k: {"uid": v.uid, "id": v.numeric_id} for k, v in registry.identities.items()},
            })
        else:
            self.formatter.print_registry(registry)
        return 0

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Primary routing entry point. Returns the process exit code."""
        argv = sys.argv[1:] if argv is None else argv
        if not argv:
            self.print_header("Dashboard Reconciler")
            self.parser.print_help()
            return 0

        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return 0

        setup_logging(args.verbose)
        try:
            if args.command == "reconcile":
                return self._reconcile(args, dry_run=args.dry_run)
            if args.command == "plan":
                return self._reconcile(args, dry_run=True)
            return self._show_registry(args)
        except KubeDashError as e:
            # Raised before a cycle could start (settings, credentials, registry read)
            logging.getLogger("kubedash.cli").error(f"{e.kind}: {e}")
            return EXIT_FATAL


def main():
    """Application entry point with interrupt handling."""
    try:
        sys.exit(KubeDashCLI().run())
    except KeyboardInterrupt:
        console.print("\n[bold red]Terminated by user.[/bold red]")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
