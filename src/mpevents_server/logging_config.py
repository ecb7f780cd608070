"""Logging configuration for the mpevents server."""
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import WebhookEvent

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def log_webhook(logger: logging.Logger, event: "WebhookEvent", client_ip: str = "") -> None:
    """Log a received webhook in a structured format.

    Args:
        logger: Logger instance
        event: Normalized webhook event
        client_ip: Address the webhook came from
    """
    logger.info(
        "Webhook received: %s #%s (%s)",
        event.table,
        event.record_id,
        event.action,
        extra={
            "table": event.table,
            "record_id": event.record_id,
            "action": event.action,
            "client_ip": client_ip,
        }
    )
