"""higgsd: the server daemon.

Runs either the multi-worker Supervisor (cluster mode) or one worker
standalone, and exits with its exit code.

Usage:
    # Standalone worker (default)
    higgsd --config config/higgs.yaml

    # Cluster mode with 4 workers
    higgsd --cluster --workers 4

    # Same, from the environment
    CLUSTER_MODE=true NUM_WORKERS=4 higgsd
"""

import argparse
import logging
import sys

from higgs_server.launchers.base_launcher import BaseLauncher
from higgs_server.launchers.supervisor import Supervisor
from higgs_server.management.worker_bootstrap import worker_main


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Start the higgs game server (higgsd)",
        parents=[BaseLauncher.prepare_cli_argument_parser()],
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  standalone  One worker serves HTTP and supervises the realtime child (default)
  cluster     A master forks N workers sharing the HTTP port and replaces
              any that exit; only worker 0 runs the realtime child

Examples:
  higgsd --config config/higgs.yaml
  higgsd --cluster --workers 4
  higgsd --no-color --log-level INFO
        """
    )
    parser.add_argument(
        "--cluster",
        dest="cluster",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run the multi-worker supervisor (default: CLUSTER_MODE)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of workers in cluster mode (default: NUM_WORKERS or CPU count)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP port (default: PORT or 3000)"
    )
    return parser


def args_to_config(args: argparse.Namespace) -> dict:
    return {
        "cluster_mode": args.cluster,
        "workers": args.workers,
        "port": args.port,
    }


def main(argv: list[str] | None = None):
    """Entry point for the higgs daemon."""
    args, settings = BaseLauncher.prepare(create_parser(), args_to_config, argv)
    logger = logging.getLogger("launch")

    if settings.cluster_mode:
        logger.info(f"Cluster mode: supervising {settings.workers} workers")
        code = Supervisor(settings).run()
        sys.exit(code)

    logger.info("Standalone mode: single worker")
    worker_main(settings, slot=0, sock=None, run_realtime=True)


if __name__ == "__main__":
    main()
