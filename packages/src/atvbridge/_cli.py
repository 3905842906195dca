"""Command-line interface (Typer-based).

Commands::

    atvbridge run                 keep the device connection and bridge it to MQTT
    atvbridge discover            list devices on the network as JSON
    atvbridge pair [IDENTIFIER]   pair a device and print {"token": ...}

Global options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``) are parsed by the callback and apply to every command.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from dataclasses import dataclass
from typing import Annotated, get_args

import typer
from pydantic import ValidationError

from atvbridge._app import Bridge
from atvbridge._backends import DeviceRef
from atvbridge._errors import PairingResult
from atvbridge._logging import configure_logging
from atvbridge._pairing import PairingCoordinator, ScannerPort
from atvbridge._pyatv import create_scanner
from atvbridge._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_PAIRING_ERROR = 2
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


@dataclass
class _Options:
    env_file: str
    log_level: str | None
    log_format: str | None

    def load_settings(self) -> Settings:
        try:
            settings = Settings(_env_file=self.env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc
        if self.log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": self.log_level.upper()},
            )
        if self.log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": self.log_format.lower()},
            )
        return settings


async def pair_device(
    coordinator: PairingCoordinator,
    device: DeviceRef,
    pin: str | None = None,
) -> PairingResult:
    """Run one pairing attempt, prompting for the PIN when the device shows it."""
    attempt = asyncio.create_task(coordinator.pair(device))
    requested = asyncio.create_task(coordinator.pin_requested.wait())
    try:
        done, _ = await asyncio.wait(
            {attempt, requested},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if requested in done and not attempt.done():
            if pin is None:
                pin = await asyncio.to_thread(typer.prompt, "PIN shown on the device")
            coordinator.submit_pin(pin.strip())
        return await attempt
    finally:
        requested.cancel()
        coordinator.shutdown()


def build_cli(version: str = "") -> typer.Typer:
    """Construct the ``atvbridge`` Typer application."""
    cli = typer.Typer(
        help=f"atvbridge v{version} — keeps an Apple TV connection alive and bridges it to MQTT",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"atvbridge v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )
        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        ctx.obj = _Options(env_file=env_file, log_level=log_level, log_format=log_format)
        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())
            raise typer.Exit()

    @cli.command()
    def run(ctx: typer.Context) -> None:
        """Connect to the configured device and bridge it to MQTT."""
        settings = ctx.obj.load_settings()
        bridge = Bridge(settings=settings, version=version)
        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(bridge.run())
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    @cli.command()
    def discover(ctx: typer.Context) -> None:
        """Scan the network and print found devices as JSON."""
        settings = ctx.obj.load_settings()
        configure_logging(settings.logging, version=version, debug=settings.device.debug)
        coordinator = PairingCoordinator(
            scanner=_scanner(settings),
            settings=settings.pairing,
        )
        devices = asyncio.run(coordinator.discover())
        typer.echo(json.dumps([device.to_dict() for device in devices], indent=2))

    @cli.command()
    def pair(
        ctx: typer.Context,
        identifier: Annotated[
            str | None,
            typer.Argument(help="Device identifier (defaults to the configured one)."),
        ] = None,
        pin: Annotated[
            str | None,
            typer.Option("--pin", help="PIN to submit instead of prompting."),
        ] = None,
    ) -> None:
        """Pair a device and print the credential token."""
        settings = ctx.obj.load_settings()
        configure_logging(settings.logging, version=version, debug=settings.device.debug)
        device = (
            DeviceRef(identifier=identifier)
            if identifier
            else DeviceRef.from_settings(settings.device)
        )
        if not device.identifier:
            raise typer.BadParameter(
                "No identifier given and ATVBRIDGE_DEVICE__IDENTIFIER is unset",
                param_hint="'IDENTIFIER'",
            )
        coordinator = PairingCoordinator(
            scanner=_scanner(settings),
            settings=settings.pairing,
        )
        result = asyncio.run(pair_device(coordinator, device, pin))
        typer.echo(result.to_json())
        if not result.ok:
            raise typer.Exit(EXIT_PAIRING_ERROR)

    return cli


def _scanner(settings: Settings) -> ScannerPort:
    return create_scanner(settings)


def main() -> None:
    """Console-script entry point."""
    from atvbridge import __version__  # noqa: PLC0415

    build_cli(__version__)()
