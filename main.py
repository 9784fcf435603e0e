"""Stack deployer CLI entrypoint."""
import json
import logging
import signal
import subprocess
from functools import partial
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from stackdeploy.config import DeploymentScope, EngineSettings
from stackdeploy.errors import StackDeployError
from stackdeploy.execution.context import DeploymentContext
from stackdeploy.execution.executor import DeploymentExecutor
from stackdeploy.execution.models import DeploymentReport, NodeRecord, NodeState
from stackdeploy.execution.modules import ModuleInstantiator
from stackdeploy.provisioning.azure import AzureProvisioningClient
from stackdeploy.provisioning.memory import InMemoryProvisioningClient
from stackdeploy.reporting.renderer import ReportRenderer
from stackdeploy.template.loader import TemplateLoader

app = typer.Typer(help="Stack Deployer - dependency-ordered deployment of declarative resource templates")
console = Console()

STATE_STYLES = {
    NodeState.SUCCEEDED: "green",
    NodeState.FAILED: "red",
    NodeState.NEVER_ATTEMPTED: "yellow",
}


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=debug)],
        force=True,
    )
    # The Azure SDK logs every HTTP request at INFO
    logging.getLogger("azure").setLevel(logging.DEBUG if debug else logging.WARNING)


def _get_default_subscription(debug: bool = False) -> str:
    """Get the default subscription ID from Azure CLI.

    Returns:
        str: Azure subscription ID.

    Raises:
        subprocess.CalledProcessError: If Azure CLI command fails.
    """
    cmd = ["az", "account", "show", "--query", "id", "-o", "tsv"]
    if debug:
        console.print(f"[blue]Debug: Running command: {' '.join(cmd)}[/]")
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def _parse_params(values: List[str]) -> Dict[str, Any]:
    """Parse ``key=value`` options; values are read as YAML scalars or collections."""
    params = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'", param_hint="--param")
        params[key.strip()] = yaml.safe_load(raw) if raw else ""
    return params


def _load_parameters_file(path: str) -> Dict[str, Any]:
    """Load a YAML or JSON parameters file.

    ARM style files (``{"parameters": {"name": {"value": ...}}}``) are
    accepted as well as plain name to value mappings.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{path} must contain a mapping", param_hint="--parameters-file")
    if isinstance(data.get("parameters"), dict):
        data = {
            name: entry["value"] if isinstance(entry, dict) and "value" in entry else entry
            for name, entry in data["parameters"].items()
        }
    return data


def _print_order(order: List[str]) -> None:
    table = Table(title="Deployment Order")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    for index, address in enumerate(order, start=1):
        table.add_row(str(index), address)
    console.print(table)


def _print_report(report: DeploymentReport) -> None:
    table = Table(title=f"Deployment {report.deployment_name}")
    table.add_column("Node", style="cyan")
    table.add_column("Type")
    table.add_column("State")
    table.add_column("Retries", justify="right")
    table.add_column("Detail")
    for record in report.records.values():
        style = STATE_STYLES.get(record.state, "white")
        state = record.state.value + (" (unchanged)" if record.no_op else "")
        table.add_row(
            record.address,
            record.resource_type or "module",
            f"[{style}]{state}[/]",
            str(record.retries),
            record.error or "",
        )
    console.print(table)

    if report.outputs:
        outputs = Table(title="Outputs")
        outputs.add_column("Name", style="cyan")
        outputs.add_column("Value")
        for name, value in report.outputs.items():
            outputs.add_row(name, json.dumps(value, default=str))
        console.print(outputs)


@app.command("validate")
def validate(
    template: str = typer.Option("main.yaml", "--template", "-t", help="Path to the template YAML file"),
    debug: bool = typer.Option(False, "--debug", help="Print verbose debug information"),
):
    """Load a template with its modules and print the deployment order."""
    _configure_logging(debug)
    try:
        graph = TemplateLoader().load(template)
        run = DeploymentContext(InMemoryProvisioningClient(), DeploymentScope(subscription_id="validate"))
        plan = ModuleInstantiator(run).plan(graph)
    except (StackDeployError, FileNotFoundError, yaml.YAMLError, ValueError) as e:
        console.print(f"[bold red]Invalid template: {e}[/]")
        raise typer.Exit(code=2)

    _print_order(plan.order)
    console.print(f"[green]Template is valid: {len(plan)} nodes[/]")


@app.command("deploy")
def deploy(
    template: str = typer.Option("main.yaml", "--template", "-t", help="Path to the template YAML file"),
    subscription: Optional[str] = typer.Option(None, "--subscription", "-s", help="Target subscription ID (defaults to the Azure CLI account)"),
    resource_group: Optional[str] = typer.Option(None, "--resource-group", "-g", help="Default resource group for resource-group scoped resources"),
    location: str = typer.Option("", "--location", "-l", help="Location exposed to templates through deployment()"),
    name: str = typer.Option("stackdeploy", "--name", "-n", help="Deployment name"),
    param: List[str] = typer.Option([], "--param", "-p", help="Parameter value as key=value (repeatable)"),
    parameters_file: Optional[str] = typer.Option(None, "--parameters-file", help="YAML or JSON parameters file"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, help="Maximum concurrent provisioning operations"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", min=0, help="Retries for transient provisioning errors"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Path for the JSON deployment report"),
    report_md: Optional[str] = typer.Option(None, "--report-md", help="Path for a Markdown deployment report"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Deploy against an in-memory provider instead of Azure"),
    debug: bool = typer.Option(False, "--debug", help="Print verbose debug information"),
):
    """Deploy a template and its modules in dependency order."""
    _configure_logging(debug)
    console.print("[bold blue]Deploying resources...[/]")

    try:
        graph = TemplateLoader().load(template)
        params: Dict[str, Any] = {}
        if parameters_file:
            params.update(_load_parameters_file(parameters_file))
        params.update(_parse_params(param))
        settings = EngineSettings.model_validate(graph.settings).merged(
            max_concurrency=concurrency, max_retries=max_retries
        )
    except (StackDeployError, FileNotFoundError, yaml.YAMLError, ValueError) as e:
        console.print(f"[bold red]Invalid template: {e}[/]")
        raise typer.Exit(code=2)

    try:
        if dry_run:
            subscription_id = subscription or "00000000-0000-0000-0000-000000000000"
            client = InMemoryProvisioningClient()
        else:
            subscription_id = subscription or _get_default_subscription(debug)
            client = AzureProvisioningClient(subscription_id)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print(f"[bold red]Could not determine the subscription: {e}[/]")
        console.print("[yellow]Pass --subscription or run 'az login'.[/]")
        raise typer.Exit(code=2)

    scope = DeploymentScope(
        subscription_id=subscription_id,
        location=location,
        resource_group=resource_group,
        deployment_name=name,
    )
    run = DeploymentContext(client, scope, settings)

    def request_cancel(signum, frame):
        console.print("[bold yellow]Cancelling: waiting for in-flight operations to finish...[/]")
        run.cancel()

    previous_handler = signal.signal(signal.SIGINT, request_cancel)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Deploying", total=None)

            def on_transition(record: NodeRecord) -> None:
                if record.state.is_terminal:
                    progress.update(task, advance=1, description=record.address)

            instantiator = ModuleInstantiator(run, executor_factory=partial(DeploymentExecutor, listener=on_transition))
            report = instantiator.instantiate(graph, params)
    except StackDeployError as e:
        console.print(f"[bold red]Invalid template: {e}[/]")
        raise typer.Exit(code=2)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _print_report(report)
    if output:
        report.save(output)
        console.print(f"[green]Deployment report saved to {output}[/]")
    if report_md:
        ReportRenderer().write(report, report_md)
        console.print(f"[green]Markdown report saved to {report_md}[/]")

    if report.cancelled:
        console.print("[bold yellow]Deployment cancelled.[/]")
        raise typer.Exit(code=1)
    if not report.success:
        console.print("[bold red]Deployment failed.[/]")
        raise typer.Exit(code=1)
    console.print("\n[green]Deployment completed successfully![/]")


if __name__ == "__main__":
    app()
