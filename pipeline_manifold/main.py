"""
Command line entry point.

Usage:
    pipeline-manifold --config <pipeline.yaml> [--verbose]
    python -m pipeline_manifold.main -c <pipeline.json>
"""

import sys
import logging
import argparse
from typing import List, Optional

import setproctitle

from pipeline_manifold.config import ConfigurationError, effective_settings as config
from pipeline_manifold.log import resolve_level, setup_logging
from pipeline_manifold.pipeline_config import load_pipeline_config
from pipeline_manifold.supervisor import ProcessManager
from pipeline_manifold.supervisor.startup import build_pipeline, install_signal_handlers

log = logging.getLogger("pipeline_manifold")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pipeline-manifold",
        description="Run a supervised tree of piped processes.",
    )
    parser.add_argument("-c", "--config", help="Path to the pipeline configuration file (JSON or YAML)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG log output")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the pipeline-manifold CLI.

    Returns:
        Exit code: 1 without --config, 2 if the config cannot be loaded,
        otherwise the exit code of the pipeline.
    """
    args = parse_arguments(argv)

    if not args.config:
        print("Must supply --config (-c) mappings with config file.", file=sys.stderr)
        return 1

    try:
        pipeline = load_pipeline_config(args.config)
        config.apply_overrides(pipeline.settings)
    except ConfigurationError as e:
        print(f"Could not load config file: {e}", file=sys.stderr)
        return 2

    setup_logging(logging.DEBUG if args.verbose else resolve_level(config.LOG_LEVEL))
    setproctitle.setproctitle(config.PROCESS_TITLE)

    manager = ProcessManager()
    install_signal_handlers(manager)
    try:
        build_pipeline(manager, pipeline)
    except Exception as e:
        log.critical(f"Startup failed due to an error: {e}", exc_info=True)
        manager.shutdown(exit_code=1)
        return 1

    return manager.supervision_loop()


if __name__ == "__main__":
    sys.exit(main())
