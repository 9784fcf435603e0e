"""Markdown rendering of deployment reports."""
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader

from ..execution.models import DeploymentReport


class ReportRenderer:
    """Renders a DeploymentReport with the bundled Jinja2 templates."""

    def __init__(self, template_name: str = "report.md.j2"):
        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(template_dir),
            trim_blocks=True,
            lstrip_blocks=True
        )
        self.jinja_env.filters["duration"] = _duration
        self.template_name = template_name

    def render(self, report: DeploymentReport) -> str:
        """Render a report.

        Args:
            report: Complete or partial deployment report.

        Returns:
            str: Markdown document.
        """
        template = self.jinja_env.get_template(self.template_name)
        return template.render(report=report, records=list(report.records.values()))

    def write(self, report: DeploymentReport, output_path: str) -> str:
        content = self.render(report)
        Path(output_path).write_text(content)
        return output_path


def _duration(record) -> str:
    started: Optional[float] = record.started_at
    finished: Optional[float] = record.finished_at
    if started is None or finished is None:
        return ""
    return f"{finished - started:.1f}s"
