#!/usr/bin/env python3
"""CLI entry point for acs-driver.

Runs one deployment per invocation, the way a build pipeline step would:
- acs-driver run -c deploy.yaml -w $WORKSPACE -e IMAGE_TAG=42
- acs-driver run -c deploy.yaml --dry-run
- acs-driver kinds
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from commands import Collaborators, build_command_set, list_kinds
from config import ConfigError, load_deploy_config
from context import JobContext
from errors import DeployError
from pipeline import PipelineRunner
from readiness import validate_master

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

logger = logging.getLogger(__name__)


def parse_env_overrides(values: Optional[list[str]]) -> dict[str, str]:
    """Parse repeated KEY=VALUE arguments.

    Raises:
        ValueError: On an entry without '=' or with an empty key
    """
    overrides = {}
    for item in values or []:
        key, sep, value = item.partition('=')
        if not sep or not key.strip():
            raise ValueError(f"Invalid -e value '{item}': expected KEY=VALUE")
        overrides[key.strip()] = value
    return overrides


def configure_logging(verbose: bool, json_output: bool) -> None:
    """Configure root logging once; JSON mode keeps stdout for the report."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stderr if json_output else sys.stdout,
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='acs-driver',
        description='Deploy orchestrator manifests to a container service cluster',
    )
    sub = parser.add_subparsers(dest='command')

    run = sub.add_parser('run', help='Run one deployment')
    run.add_argument(
        '-c', '--config',
        help='Deployment config file (default: $ACS_DRIVER_CONFIG or ./deploy.yaml)'
    )
    run.add_argument(
        '-w', '--workspace', type=Path, default=Path.cwd(),
        help='Workspace root the config file paths are relative to (default: cwd)'
    )
    run.add_argument(
        '-e', '--env', action='append', metavar='KEY=VALUE',
        help='Substitution variable (repeatable, overrides the process environment)'
    )
    run.add_argument(
        '--job',
        help='Job name used for credential scoping (default: config name)'
    )
    run.add_argument(
        '--run-id',
        help='Run identifier (default: timestamp plus random suffix)'
    )
    run.add_argument(
        '--report-dir', type=Path,
        help='Write JSON and markdown run reports to this directory'
    )
    run.add_argument(
        '--json', action='store_true', dest='json_output',
        help='Print the run report as JSON on stdout (logs go to stderr)'
    )
    run.add_argument(
        '--dry-run', action='store_true',
        help='Show the commands that would run without executing them'
    )
    run.add_argument(
        '--preflight', action='store_true',
        help='Check the master resolves and accepts SSH before running'
    )
    run.add_argument(
        '-v', '--verbose', action='store_true',
        help='Verbose output'
    )

    sub.add_parser('kinds', help='List supported orchestrator kinds')
    return parser


def cmd_run(args) -> int:
    configure_logging(args.verbose, args.json_output)

    try:
        env_overrides = parse_env_overrides(args.env)
        config = load_deploy_config(args.config)
        data = config.to_command_data()
        commands = build_command_set(data, Collaborators(store=config.credential_store()))
    except (ConfigError, DeployError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    runner = PipelineRunner(report_dir=args.report_dir)
    if args.dry_run:
        runner.preview(data, commands)
        return EXIT_OK

    if args.preflight:
        ok, message = validate_master(data.master_endpoint, data.port)
        if not ok:
            print(f"Pre-flight validation failed:\n  ✗ {message}", file=sys.stderr)
            return EXIT_FAILED
        logger.info(f"Pre-flight validation passed: {message}")

    env = dict(os.environ)
    env.update(env_overrides)

    with JobContext(args.workspace, env=env, run_id=args.run_id, principal=args.job or config.name) as job:
        result = runner.run(job, data, commands)

    if args.json_output:
        print(json.dumps(runner.report.to_dict(result.outputs), indent=2))

    if result.success:
        return EXIT_OK
    if result.cancelled:
        return EXIT_CANCELLED
    logger.error(f"Deployment failed at {result.failed_command}: {result.message}")
    return EXIT_FAILED


def cmd_kinds(_args) -> int:
    print("Supported orchestrators:")
    for kind in list_kinds():
        print(f"  {kind}")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'run':
        return cmd_run(args)
    if args.command == 'kinds':
        return cmd_kinds(args)
    parser.print_help()
    return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
