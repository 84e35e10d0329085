"""
Hitachi Pool Capacity Report - Main Application

This is the main entry point of the command line tool. It connects to
the Configuration Manager REST API and prints either the pool capacity
report ('pool') or the LUN reservation report ('reserve') as a console
table or as comma separated lines.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO

from config import (
    HitachiConfig,
    MISSING_FIELD_POLICIES,
    OUTPUT_STYLES,
    REPORT_TYPES,
    UNCLASSIFIED_POLICIES,
    load_config,
    load_config_from_env,
)
from hitachi_client import (
    ApiVersionError,
    AuthenticationError,
    ConnectionError,
    DataCollectionError,
    HitachiSessionClient,
    StorageSelectionError,
)
from pool_metrics import PoolRecordError, SchemaViolation, derive_pool_report
from row_builder import (
    build_csv_pool_rows,
    build_lun_rows,
    build_pool_rows,
    render_csv,
    render_table,
)

__version__ = '2.0.0'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_CONNECTION = 2
EXIT_AUTHENTICATION = 3
EXIT_DATA = 4
EXIT_POOL = 5
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hitachi-pool-report',
        description=(
            "Shows the important pool capacity values, or all reserves on any "
            "LUN, of a Hitachi storage system."
        ),
    )
    parser.add_argument('--host', help="host to send requests to (default: localhost)")
    parser.add_argument(
        '--port', type=int,
        help="REST API port. The storage REST API uses 443, the HCS REST API 23451."
    )
    parser.add_argument('--user', help="storage user, even when contacting HCS")
    parser.add_argument('--password', help="password of the storage user")
    parser.add_argument('--output', choices=OUTPUT_STYLES, help="'stdout' table or 'csv' lines")
    parser.add_argument(
        '--type', choices=REPORT_TYPES,
        help="'pool' for pool data, 'reserve' for LUN reservations"
    )
    parser.add_argument('--config', help="JSON configuration file")
    parser.add_argument('--storage-device-id', help="storage device to report on")
    parser.add_argument(
        '--register-storage', metavar='HOST',
        help="register the storage SVP at HOST with HCS before reporting"
    )
    parser.add_argument(
        '--unclassified', choices=UNCLASSIFIED_POLICIES,
        help="skip pools of unknown type with a warning, or fail"
    )
    parser.add_argument(
        '--on-missing-field', choices=MISSING_FIELD_POLICIES,
        help="abort on a pool with missing fields, or skip it with a warning"
    )
    parser.add_argument('--verbose', action='store_true', help="detailed logging output")
    parser.add_argument('--trace', action='store_true', help="all logging output, for troubleshooting")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def setup_logging(verbose: bool, trace: bool, output_style: str) -> None:
    """
    Configure the root logger on stderr.

    CSV output keeps the console quiet apart from warnings so the
    data can be redirected as is.
    """
    if verbose or trace:
        level = logging.DEBUG
    elif output_style == 'csv':
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)
    if not trace:
        logging.getLogger('urllib3').setLevel(logging.WARNING)


def build_config(args: argparse.Namespace) -> HitachiConfig:
    """
    Build the run configuration.

    Precedence: --config file, then config.json, then command line
    credentials, then HITACHI_* environment variables. Command line
    flags override loaded values.
    """
    if args.config:
        base = load_config(args.config)
    elif Path("config.json").exists():
        logger.info("Loading configuration from config.json")
        base = load_config("config.json")
    elif args.user or args.password:
        base = HitachiConfig(username=args.user or '', password=args.password or '')
    else:
        base = load_config_from_env()

    return base.with_overrides(
        host=args.host,
        port=args.port,
        username=args.user,
        password=args.password,
        output_style=args.output,
        report_type=args.type,
        storage_device_id=args.storage_device_id,
        unclassified_pool_policy=args.unclassified,
        missing_field_policy=args.on_missing_field,
    )


def run_pool_report(
    client: HitachiSessionClient,
    config: HitachiConfig,
    stream: Optional[TextIO] = None
) -> int:
    """
    Collect, derive and render the pool report.

    Returns:
        Number of pools rendered
    """
    client.check_api_version()
    client.select_storage_device_id()
    client.open_session()

    payload = client.get_pools()
    build = build_csv_pool_rows if config.output_style == 'csv' else build_pool_rows

    rows = []
    count = 0
    for metrics in derive_pool_report(payload, config):
        rows.extend(build(metrics, config))
        count += 1

    _render(rows, config, stream)
    return count


def run_reserve_report(
    client: HitachiSessionClient,
    config: HitachiConfig,
    stream: Optional[TextIO] = None
) -> int:
    """
    Collect and render the LUN reservation report.

    Returns:
        Number of LUNs rendered
    """
    client.select_storage_device_id()
    client.open_session()

    rows = []
    count = 0
    for reservation in client.get_lun_reservations():
        rows.extend(build_lun_rows(reservation, config))
        count += 1

    _render(rows, config, stream)
    return count


def _render(rows, config: HitachiConfig, stream: Optional[TextIO]) -> None:
    if config.output_style == 'csv':
        render_csv(rows, config, stream)
    else:
        render_table(rows, config, stream)


def _fail(title: str, error: Exception, hints: List[str], exit_code: int) -> None:
    print(f"\n❌ {title}:", file=sys.stderr)
    print(f"   {error}", file=sys.stderr)
    if hints:
        print("\nTroubleshooting:", file=sys.stderr)
        for hint in hints:
            print(f"  - {hint}", file=sys.stderr)
    sys.exit(exit_code)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main application entry point.

    1. Parse arguments and load configuration
    2. Connect to the REST API (optionally registering a storage)
    3. Collect and render the selected report
    Each error kind maps to its own diagnostic and exit status.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.trace, args.output or 'stdout')

    try:
        config = build_config(args)
    except (ValueError, FileNotFoundError) as e:
        _fail("Configuration Error", e, [
            "Specify --user and --password",
            "Or create a config.json file (see config.example.json)",
            "Or set environment variables (HITACHI_HOST, HITACHI_USER, etc.)",
        ], EXIT_CONFIG)

    # logging was configured before the config file could change the output style
    if config.output_style == 'csv' and not (args.verbose or args.trace):
        logging.getLogger().setLevel(logging.WARNING)

    logger.info(f"hitachi-pool-report version {__version__}")

    try:
        with HitachiSessionClient(config) as client:
            if args.register_storage:
                client.register_storage(args.register_storage)

            if config.report_type == 'pool':
                count = run_pool_report(client, config)
                logger.info(f"Reported {count} pool(s)")
            else:
                count = run_reserve_report(client, config)
                logger.info(f"Reported {count} LUN(s)")

    except ConnectionError as e:
        logger.error(f"Connection failed: {e}")
        _fail("Connection Error", e, [
            "Verify the REST API server is running and accessible",
            f"Check network connectivity to port {config.port}",
            "Verify hostname/IP address is correct",
        ], EXIT_CONNECTION)

    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        _fail("Authentication Error", e, [
            "Verify username and password are correct",
            "The user must be a storage user, even when contacting HCS",
        ], EXIT_AUTHENTICATION)

    except (DataCollectionError, ApiVersionError, StorageSelectionError, SchemaViolation) as e:
        logger.error(f"Data collection failed: {e}")
        _fail("Data Collection Error", e, [
            "Check the storage device id",
            "Review logs (--verbose) for detailed error information",
        ], EXIT_DATA)

    except PoolRecordError as e:
        logger.error(f"Pool metrics derivation failed: {e}")
        _fail("Pool Error", e, [], EXIT_POOL)

    except KeyboardInterrupt:
        print("\n\n⚠️  Report interrupted by user", file=sys.stderr)
        logger.info("Report interrupted by user")
        sys.exit(EXIT_INTERRUPTED)

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        _fail("Unexpected Error", e, ["Please check the logs for more details"], EXIT_CONFIG)

    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
