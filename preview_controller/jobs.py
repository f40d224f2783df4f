"""
Job entry points.

  deploy  <context.json>     one provisioning run for a build
  sweep   [--dry-run]        one GC sweep
  delete  <name> [--vm]      explicit deletion of one environment

Each job is a finite run: it exits 0 on success and 1 on any controller
error, after logging it.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .controller import build_controller
from .exceptions import ConfigurationError, PreviewError
from .models import Backing, BuildConfig, PreviewEnvironment, ProvisionResult

logger = logging.getLogger("preview-controller")


def load_build_config(path: str) -> BuildConfig:
    try:
        with open(path) as f:
            return BuildConfig.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read build context {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid build context {path}: {e}") from e


def write_result(path: str, result: ProvisionResult):
    with open(path, "w") as f:
        f.write(result.model_dump_json(indent=2))
    logger.info(f"Result written to {path}")


async def deploy(args, settings: Settings) -> int:
    build = load_build_config(args.context)
    controller = build_controller(settings, logger)
    await controller.provisioner.provision(
        build, on_result=lambda result: write_result(settings.RESULT_PATH, result),
    )
    return 0


async def sweep(args, settings: Settings) -> int:
    controller = build_controller(settings, logger)
    report = await controller.detector.sweep(dry_run=True if args.dry_run else None)
    logger.info(f"Deleted: {', '.join(report.deleted) or 'none'}")
    return 0


async def delete(args, settings: Settings) -> int:
    backing = Backing.DEDICATED_VM if args.vm else Backing.SHARED_CLUSTER
    env = PreviewEnvironment.create(args.name, backing, settings)
    controller = build_controller(settings, logger)
    await controller.deleter.delete(env)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="preview-controller")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="Provision the preview environment of a build")
    p.add_argument("context", help="Path to the build context JSON file")
    p.set_defaults(func=deploy)

    p = sub.add_parser("sweep", help="Delete stale preview environments")
    p.add_argument("--dry-run", action="store_true", help="Only log what would be deleted")
    p.set_defaults(func=sweep)

    p = sub.add_parser("delete", help="Delete one preview environment")
    p.add_argument("name", help="Preview environment name")
    p.add_argument("--vm", action="store_true", help="Environment runs on a dedicated VM")
    p.set_defaults(func=delete)
    return parser


def main(argv: Optional[list[str]] = None, settings: Settings = default_settings) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(args.func(args, settings))
    except PreviewError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
