import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path

import uvicorn
import uvicorn.importer

from fastrabbit.exceptions import FastRabbitCLIException


@dataclass(frozen=True)
class AppConfiguration:
    app: str
    log_level: int
    log_serialize: bool
    apm_provider: str
    metrics: str
    subscribers: set[str]


@dataclass(frozen=True)
class ServerConfiguration:
    host: str
    port: int
    workers: int
    reload: bool
    log_level: int


class ApplicationRunner:
    def run(self, app_config: AppConfiguration, server_config: ServerConfiguration) -> None:
        self.set_application_variables(app_config)
        self.validate_application(app_config.app)
        uvicorn.run(app_config.app, lifespan="on", **asdict(server_config))

    def set_application_variables(self, app_config: AppConfiguration) -> None:
        os.environ["FASTRABBIT_LOG_LEVEL"] = str(app_config.log_level)
        os.environ["FASTRABBIT_ENABLE_LOG_SERIALIZE"] = str(int(app_config.log_serialize))
        os.environ["FASTRABBIT_APM_PROVIDER"] = app_config.apm_provider
        os.environ["FASTRABBIT_METRICS"] = app_config.metrics
        os.environ["FASTRABBIT_SUBSCRIBERS"] = ",".join(sorted(app_config.subscribers))

    def validate_application(self, app: str) -> None:
        from fastrabbit.applications import FastRabbit

        posix_path = self.translate_pypath_to_posix(app)
        self.resolve_application_posix_path(posix_path)

        instance = uvicorn.importer.import_from_string(app)
        if not isinstance(instance, FastRabbit):
            raise FastRabbitCLIException(
                f"The object '{app}' must be an instance of {FastRabbit.__name__}."
            )

    def translate_pypath_to_posix(self, app: str) -> Path:
        module_path, _, attribute = app.partition(":")
        if not (module_path and attribute):
            raise uvicorn.importer.ImportFromStringError(
                f'Import string "{app}" must be in format "<module>:<attribute>".'
            )

        return Path(*module_path.split(".")).with_suffix(".py")

    def resolve_application_posix_path(self, posix_path: Path) -> None:
        directory = str(Path.cwd())
        if not (Path.cwd() / posix_path).exists():
            raise FastRabbitCLIException(f"The application file {posix_path} was not found.")

        if directory not in sys.path:
            sys.path.insert(0, directory)
