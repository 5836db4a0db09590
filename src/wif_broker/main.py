"""CLI entry point: load configuration, acquire a token, report."""

from __future__ import annotations

import argparse
import logging
import sys

import yaml

from wif_broker.config.configuration import CredentialConfiguration
from wif_broker.config.environment import load_configuration
from wif_broker.errors import ConfigurationError


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Obtain Google Cloud access tokens via workload identity federation",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an external_account credential configuration (JSON or YAML). "
        "Defaults to GOOGLE_WORKLOADIDENTITY_* environment variables.",
    )
    parser.add_argument(
        "--list-projects",
        action="store_true",
        help="List projects accessible with the acquired token",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for a token (default: 60)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        if args.config:
            with open(args.config) as fh:
                config = CredentialConfiguration.from_info(yaml.safe_load(fh))
        else:
            config = load_configuration()
    except (ConfigurationError, OSError, yaml.YAMLError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    from wif_broker.prompt.cli import run_cli

    run_cli(config=config, list_projects=args.list_projects, timeout=args.timeout)


if __name__ == "__main__":
    main()
