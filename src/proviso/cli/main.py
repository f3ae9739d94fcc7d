"""
Main CLI entrypoint for proviso.

Usage:
    proviso --version
    proviso run -i inventory.ini deploy.yml [--deploy-type upi] [--compact]
    proviso check deploy.yml
"""

import argparse
import json
import logging
import platform
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from proviso import __version__
from proviso.engine.config import load_config
from proviso.engine.errors import ExitCode, ParseError, ProvisoError
from proviso.engine.runner import DEPLOY_TYPES, PlaybookRunner
from proviso.engine.scheduler import STRATEGIES

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"proviso {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for proviso."""
    parser = argparse.ArgumentParser(
        prog="proviso",
        description="Run guarded, retryable provisioning playbooks against host groups",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  proviso run -i inventory.ini deploy.yml
  proviso run -i hosts deploy.yml --deploy-type upi --compact -e ocp4_version=4.14
  proviso check deploy.yml
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a playbook")
    _add_common_arguments(run)
    run.add_argument(
        "--deploy-type",
        dest="deploy_type",
        choices=DEPLOY_TYPES,
        default="ipi",
        help="Installer-provisioned (ipi) or user-provisioned (upi) flow (default: ipi)",
    )
    run.add_argument(
        "--compact",
        action="store_true",
        help="Compact topology (sets the deploy_compact fact)",
    )
    run.add_argument(
        "-e", "--extra-vars",
        dest="extra_vars",
        action="append",
        default=[],
        help="Extra variables as key=value, JSON or @file.yml (can be repeated)",
    )
    run.add_argument(
        "--strategy",
        choices=STRATEGIES,
        default=None,
        help="Run host groups in parallel or in document order",
    )

    check = subparsers.add_parser("check", help="Load and validate a playbook without running it")
    _add_common_arguments(check)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "playbook",
        help="Playbook file",
    )
    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file or directory",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (default: $PROVISO_CONFIG)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=None,
        help="Output results in JSON format",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )


def configure_logging(verbosity: int) -> None:
    level = LOG_LEVELS[min(verbosity, len(LOG_LEVELS) - 1)]
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s - %(message)s",
    )


def parse_extra_vars(extra_vars_list: List[str]) -> Dict[str, Any]:
    """
    Parse extra vars from the command line.

    Accepts ``key=value`` (values decoded as JSON when possible), a JSON
    object, or ``@path`` to a YAML/JSON file.

    Raises:
        ParseError: If an item matches none of these forms
    """
    result: Dict[str, Any] = {}
    for item in extra_vars_list:
        item = item.strip()

        if item.startswith('@'):
            path = Path(item[1:])
            if not path.exists():
                raise ParseError(f"extra vars file not found: {path}", file_path=str(path))
            try:
                data = yaml.safe_load(path.read_text(encoding='utf-8'))
            except yaml.YAMLError as e:
                raise ParseError(f"YAML syntax error: {e}", file_path=str(path))
            if not isinstance(data, dict):
                raise ParseError("extra vars file must contain a mapping", file_path=str(path))
            result.update(data)
            continue

        if item.startswith('{'):
            try:
                data = json.loads(item)
            except json.JSONDecodeError as e:
                raise ParseError(f"invalid JSON extra vars: {e}")
            if not isinstance(data, dict):
                raise ParseError("JSON extra vars must be an object")
            result.update(data)
            continue

        if '=' not in item:
            raise ParseError(f"extra vars must be key=value, JSON or @file: {item!r}")

        key, _, value = item.partition('=')
        try:
            result[key.strip()] = json.loads(value.strip())
        except json.JSONDecodeError:
            result[key.strip()] = value.strip()

    return result


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for the proviso CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return ExitCode.SUCCESS

    configure_logging(parsed.verbose)

    try:
        config = load_config(parsed.config).merged(
            strategy=getattr(parsed, 'strategy', None),
            json_output=parsed.json,
            verbosity=parsed.verbose or None,
        )
        extra_vars = parse_extra_vars(getattr(parsed, 'extra_vars', []))
    except ProvisoError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code

    runner = PlaybookRunner(
        playbook_path=parsed.playbook,
        inventory_source=parsed.inventory,
        config=config,
        deploy_type=getattr(parsed, 'deploy_type', 'ipi'),
        deploy_compact=getattr(parsed, 'compact', False),
        extra_vars=extra_vars,
    )

    if parsed.command == "check":
        return runner.check()
    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
