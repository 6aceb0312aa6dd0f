"""
Report generation for loadrig runs.

This module renders a RunResult as JSON, Markdown or CSV, with latency
percentiles, throughput, checks, per-endpoint breakdowns and threshold
outcomes.
"""

import csv
import io
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .runner import RunResult

VALID_FORMATS = ["json", "markdown", "csv"]

_FORMAT_EXTENSIONS = {
    "json": "json",
    "markdown": "md",
    "csv": "csv",
}


class RunReporter:
    """
    Generates reports from run results.

    Example usage:
        reporter = RunReporter()
        print(reporter.to_markdown(result))
        reporter.save_report(result, Path("results"), formats=["json", "csv"])
    """

    def to_json(self, result: RunResult, indent: int = 2) -> str:
        """Convert a result to a JSON string.

        Args:
            result: Run result
            indent: JSON indentation

        Returns:
            JSON string representation
        """
        return json.dumps(result.to_dict(), indent=indent, default=str)

    def to_markdown(self, result: RunResult) -> str:
        """Convert a result to Markdown format.

        Args:
            result: Run result

        Returns:
            Markdown string representation
        """
        snapshot = result.snapshot
        lines = [
            f"# Load Test Report: {result.name}",
            "",
            "## Summary",
            "",
            f"- **Status**: {'✅ PASSED' if result.passed else '❌ FAILED'}",
            f"- **Duration**: {result.duration_seconds:.2f} seconds",
            f"- **Start Time**: {result.started_at}",
            f"- **End Time**: {result.finished_at}",
        ]
        if result.aborted_by:
            lines.append(f"- **Aborted By**: `{result.aborted_by}`")
        lines.append("")

        failures = result.failed_thresholds()
        if failures:
            lines.extend([
                "### Failures",
                "",
            ])
            for failure in failures:
                lines.append(f"- {failure}")
            lines.append("")

        lines.extend([
            "## Throughput",
            "",
            f"- **Requests**: {snapshot.value('http_reqs', 'count'):.0f}",
            f"- **Requests/Second**: {snapshot.value('http_reqs', 'rate'):.2f}",
            f"- **Failed Requests**: {snapshot.value('http_req_failed', 'rate') * 100:.2f}%",
            f"- **Iterations**: {snapshot.value('iterations', 'count'):.0f}",
            f"- **Iteration Errors**: {snapshot.value('iteration_errors', 'count'):.0f}",
            f"- **Peak VUs**: {snapshot.value('vus_max', 'value'):.0f}",
            f"- **Data Received**: {snapshot.value('data_received', 'count') / 1024:.2f} KB",
            "",
            "## Request Latency",
            "",
            "| Aggregation | Latency (ms) |",
            "|-------------|--------------|",
        ])
        for aggregation in ("avg", "min", "med", "max", "p(90)", "p(95)", "p(99)"):
            lines.append(
                f"| {aggregation} | {snapshot.value('http_req_duration', aggregation):.2f} |"
            )
        lines.append("")

        endpoints = snapshot.endpoints()
        if endpoints:
            lines.extend([
                "## Endpoints",
                "",
                "| Endpoint | Requests | Avg (ms) | p95 (ms) | Failed |",
                "|----------|----------|----------|----------|--------|",
            ])
            for tag, values in endpoints.items():
                lines.append(
                    f"| {tag} | {values['count']:.0f} | {values['avg']:.2f} | "
                    f"{values['p(95)']:.2f} | {values['failed_rate'] * 100:.2f}% |"
                )
            lines.append("")

        if snapshot.checks:
            lines.extend([
                "## Checks",
                "",
                "| Check | Passes | Fails | Pass Rate |",
                "|-------|--------|-------|-----------|",
            ])
            for name, check in snapshot.checks.items():
                lines.append(
                    f"| {name} | {check.passes} | {check.fails} | {check.pass_rate * 100:.2f}% |"
                )
            lines.append("")

        if result.thresholds:
            lines.extend([
                "## Thresholds",
                "",
                "| Metric | Threshold | Observed | Result |",
                "|--------|-----------|----------|--------|",
            ])
            for metric, outcome in result.thresholds.items():
                for expression in outcome.results:
                    lines.append(
                        f"| {metric} | `{expression.expression}` | {expression.observed:.4g} | "
                        f"{'✅' if expression.passed else '❌'} |"
                    )
            lines.append("")

        if snapshot.errors:
            lines.extend([
                "## Recent Errors",
                "",
            ])
            for error in snapshot.errors[-10:]:
                lines.append(f"- {error}")
            lines.append("")

        return "\n".join(lines)

    def to_csv(self, result: RunResult) -> str:
        """Convert a result to CSV format, one row per metric aggregation.

        Args:
            result: Run result

        Returns:
            CSV string representation
        """
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")

        writer.writerow(["metric", "aggregation", "value"])
        for name, summary in sorted(result.snapshot.metrics.items()):
            for aggregation, value in summary.values.items():
                writer.writerow([name, aggregation, f"{value:.4f}"])
        for name, check in result.snapshot.checks.items():
            writer.writerow([f"checks{{check:{name}}}", "rate", f"{check.pass_rate:.4f}"])
        writer.writerow(["run", "passed", 1 if result.passed else 0])

        return output.getvalue()

    def save_report(
        self,
        result: RunResult,
        output_dir: Path,
        formats: Optional[list[str]] = None,
    ) -> list[Path]:
        """Save a result to files in the specified formats.

        Args:
            result: Run result
            output_dir: Directory to save reports
            formats: List of formats (json, markdown, csv)

        Returns:
            List of saved file paths

        Raises:
            ValueError: If an unknown format is requested
        """
        formats = formats or ["json", "markdown"]
        unknown = [fmt for fmt in formats if fmt not in VALID_FORMATS]
        if unknown:
            raise ValueError(f"Unknown report format(s): {unknown}. Must be one of {VALID_FORMATS}")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        renderers = {
            "json": self.to_json,
            "markdown": self.to_markdown,
            "csv": self.to_csv,
        }

        saved_files = []
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", result.name)
        base_name = f"{safe_name}_report_{timestamp}"
        for fmt in formats:
            path = output_dir / f"{base_name}.{_FORMAT_EXTENSIONS[fmt]}"
            path.write_text(renderers[fmt](result), encoding="utf-8")
            saved_files.append(path)

        return saved_files
