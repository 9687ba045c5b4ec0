import platform

import rich
import typer

from fastrabbit.__about__ import __version__
from fastrabbit.cli.options import (
    AppApmProviderOption,
    AppArgument,
    AppHostOption,
    AppHotReloadOption,
    AppLogLevelOption,
    AppLogSerializeOption,
    AppMetricsOption,
    AppNumWorkersOption,
    AppPortOption,
    AppSelectedSubscribersOption,
    AppServerLogLevelOption,
    AppVersionOption,
    CLIContext,
)
from fastrabbit.cli.runner import AppConfiguration, ApplicationRunner, ServerConfiguration
from fastrabbit.cli.utils import (
    APMProviders,
    LogLevels,
    MetricsBackends,
    ensure_amqp_url,
    get_log_level,
)

app = typer.Typer(
    name="fastrabbit",
    help="A CLI to run FastRabbit applications that consume RabbitMQ queues.",
    pretty_exceptions_short=True,
    invoke_without_command=True,
    rich_markup_mode="markdown",
)

WELCOME_TEXT = """
[bold]Welcome to the FastRabbit CLI! ✨[/bold]

[dim]Runs FastRabbit applications, the consumers of RabbitMQ queues.[/dim]

[bold]Usage[/bold]: [cyan]fastrabbit [COMMAND] [ARGS]...[/cyan]

[bold]Common Commands:[/bold]
  [green]run[/green]    Run a FastRabbit application.
  [green]help[/green]   Get detailed help for a command.

Run '[cyan]fastrabbit --help[/cyan]' for every command and option.
"""


@app.callback()
def main(
    ctx: CLIContext,
    version: AppVersionOption = False,
) -> None:
    """
    Display helpful tips when the main command is run without any subcommands.
    """
    if version:
        typer.echo(
            f"Running FastRabbit {__version__} with {platform.python_implementation()} "
            f"{platform.python_version()} on {platform.system()}",
        )
        raise typer.Exit

    if ctx.invoked_subcommand is None:
        rich.print(WELCOME_TEXT)


@app.command()
def run(
    app: AppArgument,
    workers: AppNumWorkersOption = 1,
    subscribers: AppSelectedSubscribersOption = [],
    reload: AppHotReloadOption = False,
    host: AppHostOption = "0.0.0.0",
    port: AppPortOption = 8000,
    log_level: AppLogLevelOption = LogLevels.INFO,
    log_serialize: AppLogSerializeOption = False,
    server_log_level: AppServerLogLevelOption = LogLevels.WARNING,
    apm_provider: AppApmProviderOption = APMProviders.NOOP,
    metrics: AppMetricsOption = MetricsBackends.NULL,
) -> None:
    """
    Run a FastRabbit application using Uvicorn.
    """
    ensure_amqp_url()
    app_configuration = AppConfiguration(
        app=app,
        log_level=get_log_level(log_level),
        log_serialize=log_serialize,
        apm_provider=apm_provider.value,
        metrics=metrics.value,
        subscribers=set(subscribers) if subscribers else set(),
    )

    server_configuration = ServerConfiguration(
        host=host,
        port=port,
        workers=workers,
        reload=reload,
        log_level=get_log_level(server_log_level),
    )

    application_runner = ApplicationRunner()
    application_runner.run(app_configuration, server_configuration)


@app.command(name="help")
def show_help(ctx: typer.Context) -> None:
    """
    Show this message and exit.
    """
    if ctx.parent:
        rich.print(ctx.parent.get_help())


def execute_app() -> None:
    app()


if __name__ == "__main__":
    execute_app()
