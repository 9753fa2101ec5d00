"""
Storefront Service — バックグラウンドスイーパー

一定間隔で以下を実行する:
  1. confirmed なのにエンタイトルメントがない注文の修復
  2. (設定されていれば) 古い pending 注文の期限切れキャンセル

shutdown_event がセットされるまでループする。
"""

import asyncio
import logging
from datetime import timedelta

from .fulfillment import FulfillmentService

logger = logging.getLogger(__name__)


async def sweep_once(
    service: FulfillmentService,
    pending_ttl: timedelta | None,
) -> dict:
    reconciled = await service.reconcile_entitlements()
    expired = 0
    if pending_ttl is not None:
        expired = await service.expire_pending(pending_ttl)
    return {"reconciled": reconciled, "expired": expired}


async def run_sweeper(
    service: FulfillmentService,
    interval: float,
    pending_ttl: timedelta | None,
    shutdown_event: asyncio.Event,
) -> None:
    logger.info("Sweeper started (interval=%ss, pending_ttl=%s)", interval, pending_ttl)
    while not shutdown_event.is_set():
        try:
            await sweep_once(service, pending_ttl)
        except Exception:
            logger.exception("Sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Sweeper stopped")
