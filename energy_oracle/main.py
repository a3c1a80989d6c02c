#!/usr/bin/env python3
"""Energy Oracle.

Collects energy-production readings from several independent oracle
providers, forms a weighted consensus value with a confidence score and
tracks each provider's reliability.

Serves the oracle HTTP API by default; ``--verify`` runs a single
verification cycle and prints the record as JSON.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

import uvicorn

from .src.fetchers import BaseFetcher, get_available_fetchers
from .src.OracleApi import DEFAULT_SWEEP_INTERVAL, create_app
from .src.OracleConfig import build_orchestrator, build_rate_limiter, load_settings
from .src.OracleOrchestrator import OracleOrchestrator, VerificationRecord
from .src.ProviderRegistry import ConfigurationError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_provider_ids(provider_str: str | None) -> list[str] | None:
    """Parse a comma-separated provider list.

    :param provider_str: e.g. "switchboard-primary,iot-direct".
    :returns: Provider ids, or None for all providers.
    """
    if not provider_str:
        return None
    ids = [p.strip() for p in provider_str.split(",") if p.strip()]
    return ids or None


async def run_once(
    orchestrator: OracleOrchestrator,
    milestone_id: str,
    provider_ids: list[str] | None,
) -> VerificationRecord:
    try:
        return await orchestrator.run_verification_cycle(milestone_id, provider_ids)
    finally:
        await BaseFetcher.close_shared_client()


def main() -> None:
    """Main entry point for the Energy Oracle CLI."""
    parser = argparse.ArgumentParser(
        description="Energy Oracle: Multi-oracle consensus for energy production readings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Provider payload formats:
  {', '.join(get_available_fetchers())}

Examples:
  # Serve the oracle API with the default providers
  python -m energy_oracle.main --port 8000

  # Serve with a JSON configuration file
  python -m energy_oracle.main --config oracle.json

  # Run one verification cycle and print the record
  python -m energy_oracle.main --verify milestone-42 \\
      --providers switchboard-primary,switchboard-secondary,iot-direct

Environment variables (CLI args take precedence):
  ORACLE_CONFIG, ORACLE_ENV, HOST, PORT, MIN_SOURCES, REQUIRED_CONFIDENCE,
  OUTLIER_THRESHOLD, CONSENSUS_THRESHOLD, SWITCHBOARD_ENDPOINT,
  SWITCHBOARD_BACKUP_ENDPOINT, EXTERNAL_ORACLE_1_ENDPOINT, IOT_DIRECT_ENDPOINT
""",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="JSON configuration file",
        default=os.environ.get("ORACLE_CONFIG"),
    )

    parser.add_argument(
        "--host",
        type=str,
        help="Address to bind the API server to (default: 0.0.0.0)",
        default=os.environ.get("HOST") or "0.0.0.0",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port of the API server (default: 8000)",
        default=int(os.environ.get("PORT") or "8000"),
    )

    parser.add_argument(
        "--sweep-interval",
        dest="sweep_interval",
        type=float,
        help=f"Seconds between rate-limit window sweeps (default: {DEFAULT_SWEEP_INTERVAL:.0f})",
        default=float(os.environ.get("RATE_LIMIT_SWEEP_INTERVAL") or DEFAULT_SWEEP_INTERVAL),
    )

    parser.add_argument(
        "--verify",
        metavar="MILESTONE_ID",
        type=str,
        help="Run one verification cycle for the milestone and exit",
    )

    parser.add_argument(
        "--providers",
        type=str,
        help="Comma-separated provider ids for --verify (default: all)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.port < 1 or args.port > 65535:
        parser.error("--port must be within 1-65535")

    if args.sweep_interval <= 0:
        parser.error("--sweep-interval must be positive")

    try:
        settings = load_settings(args.config)
        orchestrator = build_orchestrator(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    consensus = settings.effective_consensus()

    # Log configuration
    logger.info("=" * 60)
    logger.info("Energy Oracle - Multi-Oracle Consensus")
    logger.info("=" * 60)
    logger.info(f"Environment:       {settings.environment}")
    logger.info(f"Providers:         {', '.join(p.id for p in settings.providers)}")
    logger.info(f"Min Sources:       {consensus.min_sources}")
    logger.info(f"Req. Confidence:   {consensus.required_confidence}")
    logger.info(f"Outlier Threshold: {consensus.outlier_threshold}")
    logger.info(f"Consensus Thresh.: {consensus.consensus_threshold}")
    logger.info(f"Algorithm:         {orchestrator.algorithm_version}")
    logger.info("=" * 60)

    if args.verify:
        try:
            record = asyncio.run(run_once(orchestrator, args.verify, parse_provider_ids(args.providers)))
        except KeyboardInterrupt:
            logger.info("Interrupted")
            sys.exit(130)
        print(json.dumps(record.to_dict(), indent=2))
        sys.exit(0 if record.consensus_result.consensus_reached else 2)

    app = create_app(
        orchestrator,
        build_rate_limiter(settings),
        sweep_interval=args.sweep_interval,
    )
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
