"""Entry point for the InferenceService operator."""

import argparse
import logging
import signal
import sys
from typing import Any

from isvc_operator import __version__
from isvc_operator.config import AuthMode, LogLevel, OperatorConfig
from isvc_operator.utils.errors import AuthenticationError


def setup_logging(level: LogLevel) -> None:
    """Configure logging for the operator."""
    logging.basicConfig(
        level=level.value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="isvc-operator",
        description="Reconcile InferenceService resources into Deployments, Services, "
        "autoscalers and routes",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Auth options
    parser.add_argument(
        "--auth-mode",
        choices=["auto", "kubeconfig", "token"],
        default=None,
        help="Authentication mode (default: auto)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to kubeconfig file",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Kubeconfig context to use",
    )

    # Scope and control loop
    parser.add_argument(
        "--namespace",
        default=None,
        help="Only watch this namespace (default: all namespaces)",
    )
    parser.add_argument(
        "--config-map-namespace",
        default=None,
        help="Namespace of the inferenceservice-config ConfigMap",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of concurrent reconcile workers (default: 4)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> OperatorConfig:
    """Build config from args, falling back to environment/defaults."""
    config_kwargs: dict[str, Any] = {}

    if args.auth_mode:
        auth_map = {
            "auto": AuthMode.AUTO,
            "kubeconfig": AuthMode.KUBECONFIG,
            "token": AuthMode.TOKEN,
        }
        config_kwargs["auth_mode"] = auth_map[args.auth_mode]

    if args.kubeconfig:
        config_kwargs["kubeconfig_path"] = args.kubeconfig

    if args.context:
        config_kwargs["kubeconfig_context"] = args.context

    if args.namespace:
        config_kwargs["watch_namespace"] = args.namespace

    if args.config_map_namespace:
        config_kwargs["config_map_namespace"] = args.config_map_namespace

    if args.workers:
        config_kwargs["workers"] = args.workers

    if args.log_level:
        config_kwargs["log_level"] = LogLevel(args.log_level)

    return OperatorConfig(**config_kwargs)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    setup_logging(config.log_level)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting InferenceService operator v{__version__}")

    # Validate auth config
    try:
        warnings = config.validate_auth_config()
        for warning in warnings:
            logger.warning(warning)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    from isvc_operator.clients.base import get_k8s_client
    from isvc_operator.controller import Controller

    try:
        with get_k8s_client(config) as k8s:
            controller = Controller(k8s, config)

            def _shutdown(signum: int, _frame: Any) -> None:
                logger.info(f"Received signal {signum}, shutting down")
                controller.stop()

            signal.signal(signal.SIGTERM, _shutdown)
            signal.signal(signal.SIGINT, _shutdown)
            controller.run()
    except AuthenticationError as e:
        logger.error(
            f"Kubernetes authentication failed: {e}. "
            "Try re-authenticating with: oc login / kubectl config set-credentials"
        )
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
