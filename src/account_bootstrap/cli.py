"""
account_bootstrap.cli — Command-line entry point.

Usage:
    account-bootstrap bootstrap dev [staging ...] [--rotate-external-token] [--max-workers N]
    account-bootstrap destroy dev [--force] [--dry-run] [--confirm DESTROY]
    account-bootstrap report dev [staging ...]

Results are printed to stdout as JSON; structured logs go to stderr. The exit
code is derived from the typed error of the failing environment(s):

    0 success                 6 dependency not ready
    1 unexpected              7 partial failure
    2 configuration / usage   8 lock held
    3 conflicting             9 cancelled
    4 access denied          10 validation
    5 transient
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, __version__
from account_bootstrap.config import Settings, load_settings
from account_bootstrap.control_plane import (
    AssumeRoleSessionFactory,
    SessionFactory,
    default_session_factory,
)
from account_bootstrap.errors import BootstrapError, ConfigurationError
from account_bootstrap.orchestrator import (
    EnvironmentResult,
    Orchestrator,
    cancel_on_signals,
    exit_code_for,
)
from account_bootstrap.registry import AccountRegistry, load_registry

logger = Logger(service=SERVICE_NAME, logger_handler=logging.StreamHandler(sys.stderr))

CONFIRMATION_TOKEN = "DESTROY"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Bootstrap, report on and tear down environment accounts.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap = subparsers.add_parser("bootstrap", help="Create or converge environments")
    bootstrap.add_argument("environments", nargs="+", metavar="ENV", help="Environment names")
    bootstrap.add_argument(
        "--rotate-external-token",
        action="store_true",
        help="Replace the external token on every role trust policy with EXTERNAL_ID",
    )
    bootstrap.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Environments bootstrapped in parallel (default: all)",
    )

    destroy = subparsers.add_parser("destroy", help="Tear down one environment")
    destroy.add_argument("environment", metavar="ENV", help="Environment name")
    destroy.add_argument(
        "--force", action="store_true", help="Required for protected environments"
    )
    destroy.add_argument(
        "--dry-run",
        action="store_true",
        help="List the resources and drain steps that would be affected; never mutates",
    )
    destroy.add_argument(
        "--confirm",
        default=None,
        help=f"Confirmation token; must be the literal {CONFIRMATION_TOKEN}",
    )

    report = subparsers.add_parser("report", help="Regenerate manifests from live state")
    report.add_argument("environments", nargs="+", metavar="ENV", help="Environment names")

    args = parser.parse_args(argv)
    if getattr(args, "max_workers", None) is not None and args.max_workers < 1:
        parser.error("--max-workers must be at least 1")
    return args


def session_factory_for(settings: Settings) -> SessionFactory:
    """Assume the organization access role unless it is configured empty."""
    if not settings.access_role_name:
        return default_session_factory
    return AssumeRoleSessionFactory(role_name=settings.access_role_name)


def _confirmed(args: argparse.Namespace, settings: Settings) -> bool:
    token = args.confirm or settings.destroy_confirm
    if not token and sys.stdin.isatty():
        token = input(f"Type {CONFIRMATION_TOKEN} to tear down {args.environment}: ").strip()
    return token == CONFIRMATION_TOKEN


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _emit_error(exc: BootstrapError) -> int:
    logger.error("Run failed", kind=exc.kind.value, error=exc.describe())
    _emit({"ok": False, "error": exc.to_dict()})
    return exc.exit_code


def run_command(
    args: argparse.Namespace, orchestrator: Orchestrator
) -> list[EnvironmentResult]:
    match args.command:
        case "bootstrap":
            return orchestrator.bootstrap(
                args.environments,
                rotate=args.rotate_external_token,
                max_workers=args.max_workers,
            )
        case "destroy":
            return orchestrator.destroy(
                [args.environment], dry_run=args.dry_run, force=args.force
            )
        case "report":
            return orchestrator.report(args.environments)
    raise ConfigurationError(f"unknown command {args.command!r}")


def main(
    argv: list[str] | None = None,
    *,
    session_factory: SessionFactory | None = None,
    registry: AccountRegistry | None = None,
) -> int:
    """CLI entrypoint."""
    args = parse_args(argv)
    try:
        settings = load_settings()
        registry = registry or load_registry(settings)
        names = args.environments if args.command != "destroy" else [args.environment]
        registry.select(names)
    except ConfigurationError as exc:
        return _emit_error(exc)

    if args.command == "destroy" and not args.dry_run and not _confirmed(args, settings):
        return _emit_error(
            ConfigurationError(
                f"destroy requires the confirmation token {CONFIRMATION_TOKEN} "
                "(--confirm or BOOTSTRAP_DESTROY_CONFIRM)",
                resource=args.environment,
            )
        )

    orchestrator = Orchestrator(
        settings,
        registry,
        session_factory=session_factory or session_factory_for(settings),
    )
    with cancel_on_signals(orchestrator.cancel):
        results = run_command(args, orchestrator)

    code = exit_code_for(results)
    _emit(
        {
            "command": args.command,
            "ok": code == 0,
            "exitCode": code,
            "results": [result.to_dict() for result in results],
        }
    )
    logger.info("Run complete", command=args.command, exit_code=code)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
