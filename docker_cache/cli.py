from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Mapping

from docker_cache.actions import ActionsContext
from docker_cache.cache_service import ActionsCacheClient, CacheBackend
from docker_cache.common import CiToolError

Phase = Callable[[ActionsContext, CacheBackend], None]


def command_map() -> dict[str, Phase]:
    """
    Map CLI command names to cache phases.

    `load` runs at job start and `save` at job end, as two separate processes.
    """
    from docker_cache.docker import load_docker_images, save_docker_images

    return {
        "load": load_docker_images,
        "save": save_docker_images,
    }


def build_parser(commands: Mapping[str, Phase]) -> argparse.ArgumentParser:
    """Build argument parser with one positional command choice."""
    parser = argparse.ArgumentParser(
        prog="python3 -m docker_cache.cli",
        description="Restore or save Docker images through the GitHub Actions cache.",
    )
    parser.add_argument("command", choices=sorted(commands.keys()))
    return parser


def run_command(
    command: str,
    commands: Mapping[str, Phase],
    context: ActionsContext,
    cache: CacheBackend,
) -> None:
    """
    Run one registered phase.

    `commands`, `context` and `cache` are passed in to keep this function easy to test.
    """
    commands[command](context, cache)


def main(argv: list[str] | None = None) -> None:
    # Build command registry once so parser and dispatcher use the same keys.
    commands = command_map()
    parser = build_parser(commands)
    args = parser.parse_args(argv)

    context = ActionsContext()
    try:
        try:
            cache = ActionsCacheClient.from_env(context)
        except CiToolError as exc:
            raise CiToolError(f"Failed to {args.command} Docker images: {exc}") from exc
        run_command(args.command, commands, context, cache)
    except CiToolError as exc:
        # Keep failures short and readable in workflow logs.
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc

    # A failed shell command marks the job failed without stopping the phase.
    if context.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
