import sys
import asyncio
import logging
import setproctitle
from typing import Any, Dict, List, Optional, Tuple

from testkit.config import MergedSettings
from testkit.log.setup import setup_logging
from testkit.supervisor import Orchestrator, OrchestrationResult
from testkit.supervisor.process_utils import split_command

log = logging.getLogger("testkit")

EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: List[str]) -> Tuple[str, List[str], Dict[str, Any]]:
    """
    Splits the command line into command, positional arguments and options.

    Options are written as `--key=value`; a bare `--flag` is stored as True.

    :param argv: The arguments without the program name.
    :return: The command (default 'run'), remaining positionals and the options.
    """
    options: Dict[str, Any] = {}
    positional: List[str] = []
    for arg in argv:
        if arg.startswith("--"):
            key, sep, value = arg[2:].partition("=")
            options[key] = value if sep else True
        else:
            positional.append(arg)

    command = positional[0].lower() if positional else "run"
    return command, positional[1:], options


async def orchestrate(settings: MergedSettings) -> OrchestrationResult:
    """Runs the configured server and driver commands once."""
    server_command, server_args = split_command(settings.SERVER_COMMAND)
    driver_command, driver_args = split_command(settings.DRIVER_COMMAND)
    orchestrator = Orchestrator(
        settings.readiness_config(),
        settings.shutdown_policy(),
        pipe_drain_timeout=settings.PIPE_DRAIN_TIMEOUT,
    )
    return await orchestrator.run(server_command, server_args, driver_command, driver_args)


def _report(result: OrchestrationResult) -> None:
    if result.shutdown_forced:
        log.warning("The server did not shut down gracefully and was force-killed.")
    if result.succeeded:
        log.info("Driver process completed successfully.")
    else:
        detail = f": {result.error}" if result.error else ""
        if result.driver_exit_code is not None:
            detail = f" (exit code {result.driver_exit_code}){detail}"
        log.error(f"Testkit run failed with '{result.outcome.value}'{detail}.")


def load_settings(options: Dict[str, Any]) -> Optional[MergedSettings]:
    """
    Merges the command-line options into the settings and configures logging
    once, at the level the merged settings ask for.

    :return: The merged settings, or None if an option could not be applied.
    """
    try:
        settings = MergedSettings(options)
    except ValueError as e:
        setup_logging(logging.INFO)
        log.error(f"Invalid configuration: {e}")
        return None

    setup_logging(logging.DEBUG if settings.VERBOSE_LOGGING else logging.INFO)
    return settings


def run_command(settings: MergedSettings) -> int:
    """
    Executes the 'run' command.

    :param settings: The merged settings for this run.
    :return: The process exit code.
    """
    try:
        # Validate the derived configuration before anything is spawned.
        settings.readiness_config()
        settings.shutdown_policy()
        split_command(settings.SERVER_COMMAND)
        split_command(settings.DRIVER_COMMAND)
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        return EXIT_USAGE

    setproctitle.setproctitle(settings.PROCESS_TITLE)
    try:
        result = asyncio.run(orchestrate(settings))
    except KeyboardInterrupt:
        log.warning("Testkit interrupted by user.")
        return EXIT_INTERRUPTED

    _report(result)
    return result.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the command-line application."""
    command, args, options = parse_args(sys.argv[1:] if argv is None else argv)
    settings = load_settings(options)
    if settings is None:
        return EXIT_USAGE
    log.debug(f"Received command: {command}, args: {args}, options: {options}")

    if command != "run":
        log.warning(f"Unknown command: '{command}'. Falling back to 'run'.")
    return run_command(settings)


def cli() -> None:
    exit_code = main()
    print("Testkit finished.")
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
