import asyncio
import logging
from typing import AsyncIterator

from fastapi import Request

from webpilotx.config import settings
from webpilotx.modules.deployments import log_channel
from webpilotx.modules.deployments.log_store import DeploymentLog

logger = logging.getLogger(__name__)


async def stream_deployment_log(deployment_id: int, request: Request) -> AsyncIterator[bytes]:
    """
    Yield a deployment log as it grows: the current content first, then every
    append exactly once, until the sealed log (ending with the completion
    sentinel) has been sent in full or the client goes away.
    """
    log = DeploymentLog(deployment_id)
    channel = log_channel.subscribe(deployment_id)
    poll_interval = settings.log_stream_poll_interval
    offset = 0
    try:
        while True:
            # Checked before reading so the read below covers the sentinel
            sealed = log.is_complete()
            chunk = log.read(offset)
            if chunk:
                offset += len(chunk)
                yield chunk
                continue
            if sealed:
                logger.info(f"End token detected for deployment {deployment_id}")
                return

            if await request.is_disconnected():
                logger.info(f"Client disconnected from log stream for deployment {deployment_id}")
                return
            woke = await asyncio.to_thread(channel.wait_for_data, offset, poll_interval)
            if woke and channel.closed and not log.read(offset) and not log.is_complete():
                # Writer is gone without new bytes; fall back to polling the file
                await asyncio.sleep(poll_interval)
    finally:
        log_channel.unsubscribe(deployment_id, channel)
