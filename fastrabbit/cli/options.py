from typing import Annotated

import typer

from fastrabbit.cli.utils import APMProviders, LogLevels, MetricsBackends

CLIContext = typer.Context

AppArgument = Annotated[
    str,
    typer.Argument(
        help="The application location as 'module.path:app', e.g. 'main:app'.",
        show_default=False,
    ),
]

AppVersionOption = Annotated[
    bool,
    typer.Option("-v", "--version", help="Show the version and exit.", is_eager=True),
]

AppNumWorkersOption = Annotated[
    int,
    typer.Option("-w", "--workers", help="The number of server worker processes.", min=1),
]

AppSelectedSubscribersOption = Annotated[
    list[str],
    typer.Option(
        "-s",
        "--subscribers",
        help="The subscriber alias to run. Use this option multiple times for many subscribers.",
    ),
]

AppHotReloadOption = Annotated[
    bool,
    typer.Option("-r", "--reload", help="Enable auto-reload when code files change."),
]

AppHostOption = Annotated[
    str,
    typer.Option("--host", help="The host to serve the health checks on."),
]

AppPortOption = Annotated[
    int,
    typer.Option("-p", "--port", help="The port to serve the health checks on."),
]

AppLogLevelOption = Annotated[
    LogLevels,
    typer.Option("--log-level", help="The log level of the application.", case_sensitive=False),
]

AppServerLogLevelOption = Annotated[
    LogLevels,
    typer.Option("--server-log-level", help="The log level of the server.", case_sensitive=False),
]

AppLogSerializeOption = Annotated[
    bool,
    typer.Option("--log-serialize", help="Write the application logs as JSON."),
]

AppApmProviderOption = Annotated[
    APMProviders,
    typer.Option("--apm-provider", help="The APM provider to report to.", case_sensitive=False),
]

AppMetricsOption = Annotated[
    MetricsBackends,
    typer.Option("--metrics", help="Where the work metrics are sent.", case_sensitive=False),
]
