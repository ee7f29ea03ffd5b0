"""codebox CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv

from codebox.config import CodeboxConfig, load_config_or_default, resolve_config_path


# ── Default template for `codebox init` ──────────────────────────────────────

_CONFIG_HEADER = """\
# codebox.yaml: sandboxed code execution settings
#
# Environment overrides: ANTHROPIC_API_KEY, WORKSPACE_HOST_PATH,
# DATA_HOST_PATH, CODEBOX_DATA_DIR.  CODEBOX_CONFIG points at this file.

"""


def _init_config(path: Path, force: bool) -> int:
    if path.exists() and not force:
        print(f"Error: {path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    body = yaml.safe_dump(CodeboxConfig().model_dump(mode="json"), sort_keys=False)
    path.write_text(_CONFIG_HEADER + body)
    print(f"Wrote {path}")
    return 0


# ── Async commands ───────────────────────────────────────────────────────────


async def _recover(config: CodeboxConfig) -> int:
    from codebox.recovery import recover_on_startup
    from codebox.registry import ProjectRegistry

    db_path = Path(config.storage.db_path)
    if not db_path.exists():
        print(f"No database at {db_path} — nothing to recover")
        return 0

    registry = ProjectRegistry(str(db_path))
    await registry.initialize()
    try:
        summary = await recover_on_startup(registry)
    finally:
        await registry.close()
    print(f"Reset {summary['reset']} stuck project(s)")
    return 0


async def _health(config: CodeboxConfig) -> int:
    from codebox.models import ContainerStatus
    from codebox.sandbox import DockerCLI, SandboxConfig, SandboxManager

    docker = DockerCLI()
    if not await docker.is_available():
        print("Docker: unavailable")
        return 1

    manager = SandboxManager(docker, SandboxConfig.from_execution_config(config.code_execution))
    sandbox, proxy = await manager.health()
    print(f"Sandbox ({manager.container_name}): {sandbox.value}")
    print(f"Proxy ({manager.proxy.container_name}): {proxy.value}")
    return 0 if sandbox == proxy == ContainerStatus.RUNNING else 1


async def _teardown(config: CodeboxConfig, purge: bool) -> int:
    from codebox.sandbox import DockerCLI, SandboxConfig, SandboxManager

    docker = DockerCLI()
    if not await docker.is_available():
        print("Error: Docker is not available", file=sys.stderr)
        return 1

    manager = SandboxManager(docker, SandboxConfig.from_execution_config(config.code_execution))
    if purge:
        await manager.destroy_stack()
        print("Removed sandbox, proxy and networks")
    else:
        await manager.stop_stack()
        print("Stopped sandbox and proxy")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="codebox",
        description="codebox — run coding agents in an isolated Docker sandbox",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to codebox.yaml (default: $CODEBOX_CONFIG or ./codebox.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # codebox init
    init_parser = subparsers.add_parser("init", help="Write a default codebox.yaml")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # codebox serve
    serve_parser = subparsers.add_parser("serve", help="Start the codebox HTTP server")
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )

    # codebox recover
    subparsers.add_parser("recover", help="Reset projects left running by a crash")

    # codebox health
    subparsers.add_parser("health", help="Show sandbox and proxy container status")

    # codebox teardown
    teardown_parser = subparsers.add_parser("teardown", help="Stop the sandbox stack")
    teardown_parser.add_argument(
        "--purge",
        action="store_true",
        help="Remove both containers and both networks instead of stopping",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config_path = resolve_config_path(args.config)

    if args.command == "init":
        sys.exit(_init_config(config_path, args.force))

    config = load_config_or_default(config_path)

    if args.command == "recover":
        sys.exit(asyncio.run(_recover(config)))
    if args.command == "health":
        sys.exit(asyncio.run(_health(config)))
    if args.command == "teardown":
        sys.exit(asyncio.run(_teardown(config, args.purge)))

    # serve
    import uvicorn

    from codebox.server import CodeboxServer, create_app

    app = create_app(server=CodeboxServer(config_path, config=config))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
