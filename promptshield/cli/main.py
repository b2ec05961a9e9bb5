"""Main CLI entry point for PromptShield."""

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, List, Optional

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from promptshield import __version__
from promptshield.security.config import SecurityConfig
from promptshield.security.content_analyzer import ContentSecurityAnalyzer
from promptshield.security.exceptions import SecurityConfigError, VariableSchemaError
from promptshield.security.models import SecuritySeverity, ValidationResult

# Load environment variables from .env file
load_dotenv()

console = Console()
error_console = Console(stderr=True)

SEVERITY_STYLES = {
    SecuritySeverity.CRITICAL: "bold red",
    SecuritySeverity.HIGH: "red",
    SecuritySeverity.MEDIUM: "yellow",
    SecuritySeverity.LOW: "blue",
}


def configure_logging(level: int = logging.WARNING, log_file: Optional[str] = None) -> None:
    """Set up console logging through rich and an optional rotating log file.

    Args:
        level: Root log level
        log_file: Optional path of a rotating log file
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, "_promptshield_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    handlers: List[logging.Handler] = [
        RichHandler(console=error_console, show_path=False, rich_tracebacks=False)
    ]
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        handlers.append(file_handler)

    for handler in handlers:
        handler._promptshield_handler = True
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


@click.group()
@click.version_option(version=__version__, prog_name="PromptShield")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output"
)
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False),
    default=None,
    help="Security configuration YAML file (defaults to PROMPTSHIELD_* environment)",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write logs to a rotating file",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: Optional[str], log_file: Optional[str]) -> None:
    """PromptShield: security validation for prompt templates.

    Scans prompt templates and their declared variables for injection
    attacks, sensitive data exposure and structural abuse.
    """
    ctx.ensure_object(dict)
    configure_logging(logging.DEBUG if verbose else logging.WARNING, log_file)

    try:
        security_config = SecurityConfig.from_yaml(config) if config else SecurityConfig.from_env()
    except SecurityConfigError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = security_config

    if verbose:
        error_console.print(f"[green]PromptShield v{__version__}[/green]")
        error_console.print(f"[dim]Config: {escape(config) if config else 'environment'}[/dim]")


@cli.command()
@click.argument("template_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--variables", "-V", "variables_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML or JSON list of declared template variables",
)
@click.option(
    "--output", "-o",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format for the report",
)
@click.option(
    "--strict", is_flag=True,
    help="Fail on any violation, not only blocking ones",
)
@click.pass_context
def scan(
    ctx: click.Context,
    template_file: str,
    variables_file: Optional[str],
    output: str,
    strict: bool,
) -> None:
    """Scan a template file for security issues.

    Exits with status 1 when the template is insecure (any violation with
    --strict) and 2 when the variable declarations are malformed.

    Examples:

    \b
        promptshield scan prompt.txt
        promptshield scan prompt.txt --variables vars.yaml -o json
    """
    analyzer = ContentSecurityAnalyzer(ctx.obj["config"])
    template_path = Path(template_file)

    try:
        content = template_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise click.ClickException(f"Cannot read template {template_path}: {e}") from e

    try:
        variables = _load_variables(Path(variables_file)) if variables_file else None
        result = analyzer.validate(content, variables)
    except VariableSchemaError as e:
        error_console.print("[red]Invalid variable declarations:[/red]")
        for error in e.errors:
            error_console.print(f"  - {escape(error)}")
        ctx.exit(2)

    if output == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _display_scan_report(template_path.name, result)

    if not result.is_secure or (strict and result.violations):
        ctx.exit(1)


@cli.command()
@click.argument("template_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output", "-o", "output_file",
    type=click.Path(dir_okay=False),
    help="Write the sanitized template to a file instead of stdout",
)
@click.pass_context
def sanitize(ctx: click.Context, template_file: str, output_file: Optional[str]) -> None:
    """Strip script content and other dangerous constructs from a template.

    Sanitization is best effort; run scan on the result before trusting it.
    """
    analyzer = ContentSecurityAnalyzer(ctx.obj["config"])
    template_path = Path(template_file)

    try:
        content = template_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise click.ClickException(f"Cannot read template {template_path}: {e}") from e

    cleaned = analyzer.sanitize(content)

    if output_file:
        Path(output_file).write_text(cleaned, encoding="utf-8")
        console.print(f"[green]Sanitized template written to[/green] {escape(output_file)}")
    else:
        click.echo(cleaned, nl=False)


def _load_variables(path: Path) -> List[Any]:
    """Load variable declarations from a YAML or JSON file."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Cannot load variables from {path}: {e}") from e

    if isinstance(data, dict) and "variables" in data:
        data = data["variables"]
    if data is None:
        return []
    if not isinstance(data, list):
        raise VariableSchemaError(["Variables file must contain a list of variable declarations"])
    return data


def _display_scan_report(name: str, result: ValidationResult) -> None:
    """Display a validation result in console format."""
    status = "[SECURE]" if result.is_secure else "[BLOCKED]"
    status_color = "green" if result.is_secure else "red"
    counts = result.count_by_severity()

    console.print(Panel(
        f"""[bold]Template:[/bold] {escape(name)}
[bold]Status:[/bold] [{status_color}]{escape(status)}[/{status_color}]
[bold]Risk Score:[/bold] {result.display_risk_score}/100
[bold]Violations:[/bold] {len(result.violations)} (critical {counts['CRITICAL']}, high {counts['HIGH']}, medium {counts['MEDIUM']}, low {counts['LOW']})
[bold]Warnings:[/bold] {len(result.warnings)}""",
        title="Security Scan",
        border_style="blue",
    ))

    if result.violations:
        table = Table(title="Violations")
        table.add_column("Severity", no_wrap=True)
        table.add_column("Type", style="cyan", no_wrap=True)
        table.add_column("Message")
        table.add_column("Suggestion", style="dim")
        for violation in result.violations:
            style = SEVERITY_STYLES[violation.severity]
            table.add_row(
                f"[{style}]{violation.severity.value}[/{style}]",
                violation.type.value,
                escape(violation.message),
                escape(violation.suggestion or ""),
            )
        console.print(table)

    if result.warnings:
        table = Table(title="Warnings")
        table.add_column("Type", style="cyan", no_wrap=True)
        table.add_column("Message")
        for warning in result.warnings:
            table.add_row(warning.type.value, escape(warning.message))
        console.print(table)


def main() -> int:
    """Main entry point for the CLI."""
    try:
        cli()
        return 0
    except KeyboardInterrupt:
        error_console.print("\n[red]Operation cancelled by user[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
