"""
Output formatting for pipeline results, approval gates and plan summaries.

Provides standardized rich renderables for:
- Stage result tables (one row per stage, in pipeline order)
- Approval gate panels with the evidence a reviewer needs
- Pipeline summary cards
"""

from typing import Any, Dict, List, Optional

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tfpipelines.console import COLORS
from tfpipelines.schemas import ApprovalGateConfig, PipelineResult, StageResult, StageStatus

STATUS_STYLES = {
    StageStatus.PASS: ("✔ pass", COLORS["success"]),
    StageStatus.FAIL: ("✖ fail", COLORS["error"]),
    StageStatus.SKIPPED: ("⊘ skipped", "dim"),
}

MAX_DETAIL_CHARS = 80


class OutputFormatter:
    """Standardized output formatting for pipeline runs."""

    @staticmethod
    def stage_table(results: List[StageResult], title: str = "Stages") -> Panel:
        """
        Format stage results as a rich table.

        Args:
            results: Stage results in pipeline order
            title: Panel title

        Returns:
            Rich Panel containing the table
        """
        table = Table(
            show_header=True,
            header_style=f"bold {COLORS['primary']}",
            border_style=COLORS["accent1"],
            show_lines=False,
            padding=(0, 1)
        )
        table.add_column("Stage", style=COLORS["accent2"], width=12)
        table.add_column("Status", width=11)
        table.add_column("Time", justify="right", width=7)
        table.add_column("Detail", style=COLORS["tertiary"], no_wrap=False, ratio=2)

        for result in results:
            label, style = STATUS_STYLES[result.status]
            detail = result.detail.strip().splitlines()[0] if result.detail.strip() else ""
            if len(detail) > MAX_DETAIL_CHARS:
                detail = detail[:MAX_DETAIL_CHARS] + "..."
            if result.failure_kind is not None:
                detail = f"[{result.failure_kind.value}] {detail}"
            table.add_row(
                result.stage_name,
                Text(label, style=style),
                f"{result.duration_seconds:.1f}s",
                detail,
            )

        return Panel(
            table,
            title=f"[bold {COLORS['accent1']}]{title}[/bold {COLORS['accent1']}]",
            border_style=COLORS["accent1"],
            padding=(0, 1)
        )

    @staticmethod
    def approval_gate(config: ApprovalGateConfig, context: Dict[str, Any]) -> Panel:
        """
        Format an approval gate with the evidence under review.

        Args:
            config: Gate configuration
            context: Evidence for the decision (plan digest, prior stages, ...)

        Returns:
            Rich Panel for the approval gate
        """
        content = []

        content.append(Text(config.description or config.gate_name, style=COLORS["primary"]))
        content.append(Text())

        facts = [
            ("Environment", config.environment),
            ("Approvals required", str(config.required_approvers)),
            ("Timeout", f"{config.timeout_seconds}s"),
        ]
        if config.excluded_reviewers:
            facts.append(("Must differ from", ", ".join(config.excluded_reviewers)))
        for key in ("plan_id", "sha256", "has_changes", "destroy"):
            if key in context:
                facts.append((key, str(context[key])))

        for key, value in facts:
            line = Text()
            line.append("  * ", style=COLORS["accent1"])
            line.append(f"{key}: ", style=f"bold {COLORS['primary']}")
            line.append(value, style=COLORS["primary"])
            content.append(line)

        return Panel(
            Text("\n").join(content),
            title=f"[bold {COLORS['warning']}]Approval gate: {config.gate_name}[/bold {COLORS['warning']}]",
            border_style=COLORS["warning"],
            padding=(1, 2)
        )

    @staticmethod
    def pipeline_summary(result: PipelineResult, error_detail: Optional[str] = None) -> Panel:
        """
        Format a pipeline result as a summary card.

        Args:
            result: Finished pipeline result
            error_detail: Optional extra text shown under the table

        Returns:
            Rich Panel with the stage table and overall status
        """
        style_color = COLORS["success"] if result.success else COLORS["error"]

        summary = Table.grid(padding=(0, 2))
        summary.add_column(style=f"bold {COLORS['primary']}")
        summary.add_column(style=style_color)
        summary.add_row("Run:", result.run_id)
        summary.add_row("Status:", result.status.value)
        summary.add_row("Duration:", f"{result.duration_seconds:.1f}s")
        if result.failure_kind is not None:
            summary.add_row("Failure:", result.failure_kind.value)

        parts = [summary, OutputFormatter.stage_table(result.stage_results)]
        if error_detail:
            parts.append(Text(error_detail, style=COLORS["error"]))

        return Panel(
            Group(*parts),
            title=f"[bold {style_color}]{result.pipeline.upper()} pipeline[/bold {style_color}]",
            border_style=style_color,
            padding=(0, 1)
        )

    @staticmethod
    def gate_history(entries: List[Dict[str, Any]], title: str = "Approval history") -> Panel:
        """
        Format recorded gate decisions, most recent first.

        Args:
            entries: Audit entries from ApprovalAuditLog.history()
            title: Panel title

        Returns:
            Rich Panel containing the table
        """
        state_styles = {
            "approved": COLORS["success"],
            "rejected": COLORS["error"],
            "timed_out": COLORS["warning"],
            "cancelled": "dim",
        }
        table = Table(
            show_header=True,
            header_style=f"bold {COLORS['primary']}",
            border_style=COLORS["accent3"],
            padding=(0, 1)
        )
        table.add_column("Time", style=COLORS["secondary"])
        table.add_column("Gate", style=COLORS["accent2"])
        table.add_column("Environment")
        table.add_column("State")
        table.add_column("Reviewers", style=COLORS["tertiary"])

        for entry in entries:
            state = entry.get("state", "")
            reviewers = ", ".join(entry.get("approvers") or [])
            if entry.get("rejected_by"):
                reviewers = f"rejected by {entry['rejected_by']}"
            table.add_row(
                str(entry.get("timestamp", ""))[:19],
                entry.get("gate_id", ""),
                entry.get("environment", ""),
                Text(state, style=state_styles.get(state, COLORS["primary"])),
                reviewers,
            )

        return Panel(
            table,
            title=f"[bold {COLORS['accent3']}]{title}[/bold {COLORS['accent3']}]",
            border_style=COLORS["accent3"],
            padding=(0, 1)
        )
