# src/kubedash/cli/formatter.py
import json
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kubedash.core.models import ReconciliationReport
from kubedash.identity.registry import IdentityRegistry

# Initialize the Rich console for high-quality terminal output
console = Console()

STATUS_STYLE = {"success": "green", "partial": "yellow", "fatal": "red"}


class ReportFormatter:
    """
    ReportFormatter: renders cycle reports and the identity registry.
    """

    def __init__(self, out: Console = None):
        self.console = out or console

    def print_json(self, data):
        # JSON output is for machines: no markup, no highlighting, no wrapping
        self.console.print(json.dumps(data, indent=2, sort_keys=True),
                           markup=False, highlight=False, soft_wrap=True)

    def print_report(self, report: ReconciliationReport):
        """
        Summary table per sink, followed by render errors and the status panel.
        """
        table = Table(title="KubeDash Reconciliation Report", show_lines=True, header_style="bold magenta")
        table.add_column("Target", style="cyan")
        table.add_column("Prune", justify="center")
        table.add_column("Create", justify="right")
        table.add_column("Update", justify="right")
        table.add_column("Delete", justify="right")
        table.add_column("Unchanged", justify="right")
        table.add_column("Suppressed", justify="right")
        table.add_column("Result", justify="center")

        for t in report.targets:
            result_icon = "✅" if t.ok else "❌"
            table.add_row(
                t.name,
                "yes" if t.prune else "no",
                str(len(t.plan.to_create)),
                str(len(t.plan.to_update)),
                str(len(t.plan.to_delete)),
                str(len(t.plan.unchanged)),
                str(len(t.suppressed_deletes)),
                result_icon,
            )

        if report.targets:
            self.console.print(table)

        for t in report.targets:
            for err in t.errors:
                self.console.print(f"[bold red]{t.name}:[/bold red] {err.kind} [{err.key}] {err.message}")

        for err in report.render_errors:
            self.console.print(f"[bold yellow]Render error[/bold yellow] [{err.key}]: {err.message}")

        if report.fatal:
            self.console.print(f"[bold red]FATAL {report.fatal.kind}:[/bold red] {report.fatal.message}")

        color = STATUS_STYLE[report.status]
        mode = " (dry run)" if report.dry_run else ""
        self.console.print(Panel(
            f"[bold white]Cycle Summary{mode}[/bold white]\n"
            f"════════════════════════════════════════\n"
            f"Status:          [{color}]{report.status.upper()}[/{color}]\n"
            f"Discovered:      {report.discovered}\n"
            f"New identities:  {len(report.new_identities)}\n"
            f"Rendered:        {report.rendered}\n"
            f"Render errors:   [yellow]{len(report.render_errors)}[/yellow]\n"
            f"Operations:      {report.operation_count}",
            border_style="dim"
        ))

    def print_registry(self, registry: IdentityRegistry):
        table = Table(title=f"Identity Registry (generation {registry.generation}, "
                            f"high water {registry.high_water})", header_style="bold magenta")
        table.add_column("ID", justify="right")
        table.add_column("Service", style="cyan")
        table.add_column("UID")

        for key, ident in sorted(registry.identities.items(), key=lambda kv: kv[1].numeric_id):
            table.add_row(str(ident.numeric_id), key, ident.uid)

        self.console.print(table)
