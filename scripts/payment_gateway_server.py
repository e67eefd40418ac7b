#!/usr/bin/env python3
import argparse
import logging
import signal
import sys
import threading

from solpay_gateway.config import load_config, validate_config
from solpay_gateway.payments import ConfigError, GatewayError, PaymentService
from solpay_gateway.server import PaymentGatewayServer

logger = logging.getLogger("payment_gateway_server")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Solana Pay payment-request gateway")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a JSON configuration file (defaults to $PAYMENT_GATEWAY_CONFIG)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        validate_config(config)
    except (ConfigError, FileNotFoundError) as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    service = PaymentService.from_config(config)
    server = PaymentGatewayServer(config, service)
    stopped = threading.Event()

    def shutdown_handler(signum, frame):  # noqa: D401
        logger.info("Received shutdown signal (%s)", signum)
        stopped.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    try:
        server.start()
    except OSError as exc:
        logger.error("Failed to start payment gateway: %s", exc)
        sys.exit(1)
    service.store.start_sweeper(config.settlement.sweep_interval_sec)

    logger.info("Payment gateway started")
    logger.info("Port: %s", config.server.listen_port)
    logger.info("External: %s", config.server.base_url)
    if config.fees.is_enabled:
        logger.info("Fee wallet: %s", config.fees.wallet)
        logger.info("Fee amount: %s %s", config.fees.amount, config.fees.asset)
    else:
        logger.info("Platform fee disabled")

    stopped.wait()
    service.store.stop_sweeper()
    server.stop()


if __name__ == "__main__":
    try:
        main()
    except GatewayError as exc:
        logger.error("Payment gateway error: %s", exc)
        sys.exit(2)
