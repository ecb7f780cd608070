from __future__ import annotations

import secrets
from typing import Optional

from fastapi import HTTPException, Request
from .settings import Settings

WEBHOOK_SECRET_HEADER = "X-MP-Webhook-Secret"


def verify_webhook_secret(provided: Optional[str], settings: Settings) -> None:
    expected = settings.webhook_secret
    if not expected:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    if not provided or not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


def best_client_ip(request: Request) -> str:
    """Originating address, preferring proxy headers over the socket peer."""
    xff = request.headers.get("x-forwarded-for", "")
    xri = request.headers.get("x-real-ip", "")
    cf = request.headers.get("cf-connecting-ip", "")

    chosen = ""
    if xff:
        # XFF can be "client, proxy1, proxy2"
        chosen = xff.split(",")[0].strip()
    elif cf:
        chosen = cf.strip()
    elif xri:
        chosen = xri.strip()
    elif request.client and request.client.host:
        chosen = request.client.host

    return chosen
