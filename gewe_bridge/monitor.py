"""Runtime wiring for one GeWe account: components, ASGI apps and servers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx
import uvicorn
from fastapi import FastAPI

from gewe_bridge.audit.logger import AuditLogger
from gewe_bridge.config import GeweAccountConfig, config_from_env
from gewe_bridge.dispatch.delivery import OutboundDelivery
from gewe_bridge.dispatch.dispatcher import Dispatcher
from gewe_bridge.dispatch.pairing import InMemoryPairingStore, PairingStore
from gewe_bridge.dispatch.reply import HttpReplyPipeline, NullReplyPipeline, ReplyPipeline
from gewe_bridge.gewe.client import GeweClient
from gewe_bridge.installer.rust_silk import RustSilkInstaller
from gewe_bridge.media.download_queue import DownloadQueue
from gewe_bridge.media.silk import VoiceTranscoder
from gewe_bridge.media.store import MediaStore
from gewe_bridge.policy import PolicyGate
from gewe_bridge.webhook.media_server import (
    DEFAULT_MEDIA_HOST,
    DEFAULT_MEDIA_PORT,
    create_media_app,
    normalize_base_path,
)
from gewe_bridge.webhook.server import create_webhook_app

logger = logging.getLogger(__name__)


@dataclass
class BridgeRuntime:
    config: GeweAccountConfig
    dispatcher: Dispatcher
    download_queue: DownloadQueue
    installer: RustSilkInstaller
    transcoder: VoiceTranscoder
    media_store: MediaStore
    webhook_app: FastAPI
    media_app: FastAPI | None = None


def build_runtime(
    config: GeweAccountConfig,
    pipeline: ReplyPipeline | None = None,
    pairing_store: PairingStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BridgeRuntime:
    """Wire every component for ``config``; ``transport`` is shared by all HTTP clients."""
    audit_logger = AuditLogger(config.audit_log_path) if config.audit_log_path else None
    installer = RustSilkInstaller(config, transport=transport, audit_logger=audit_logger)
    transcoder = VoiceTranscoder(config, installer=installer)
    store = MediaStore(config.state_path)
    client = GeweClient.from_config(config, transport=transport)
    delivery = OutboundDelivery(config, client, store, transcoder, transport=transport)
    queue = DownloadQueue(config.download_min_delay_ms, config.download_max_delay_ms)

    if pipeline is None:
        if config.upstream_url:
            pipeline = HttpReplyPipeline(
                config.upstream_url, config.upstream_token, transport=transport,
            )
        else:
            logger.warning("[%s] upstream_url not set; replies are disabled", config.account_id)
            pipeline = NullReplyPipeline()

    dispatcher = Dispatcher(
        config,
        PolicyGate(config),
        client,
        pipeline,
        delivery,
        pairing_store or InMemoryPairingStore(),
        queue,
        store,
        transcoder,
        audit_logger=audit_logger,
        transport=transport,
    )
    webhook_app = create_webhook_app(
        config.normalized_webhook_path,
        config.webhook_secret,
        dispatcher.handle,
        audit_logger=audit_logger,
    )
    media_app = None
    if config.media_server_enabled:
        media_app = create_media_app(config.media_path, store.outbound_dir)

    return BridgeRuntime(
        config=config,
        dispatcher=dispatcher,
        download_queue=queue,
        installer=installer,
        transcoder=transcoder,
        media_store=store,
        webhook_app=webhook_app,
        media_app=media_app,
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: webhook app for the account in GEWE_CONFIG_PATH."""
    return build_runtime(config_from_env()).webhook_app


async def serve(config: GeweAccountConfig) -> None:
    """Run the webhook server, and the media server when enabled, until cancelled."""
    if not config.token or not config.app_id:
        raise ValueError("GeWe not configured (token and app_id are required)")

    runtime = build_runtime(config)
    servers = [
        uvicorn.Server(uvicorn.Config(
            runtime.webhook_app,
            host=config.webhook_host,
            port=config.webhook_port,
            log_level="info",
        )),
    ]
    logger.info(
        "[%s] GeWe webhook listening on http://%s:%s%s",
        config.account_id, config.webhook_host, config.webhook_port,
        config.normalized_webhook_path,
    )

    if runtime.media_app is not None:
        media_host = config.media_host or DEFAULT_MEDIA_HOST
        media_port = config.media_port or DEFAULT_MEDIA_PORT
        servers.append(uvicorn.Server(uvicorn.Config(
            runtime.media_app,
            host=media_host,
            port=media_port,
            log_level="info",
        )))
        logger.info(
            "[%s] GeWe media server listening on http://%s:%s%s",
            config.account_id, media_host, media_port, normalize_base_path(config.media_path),
        )

    await asyncio.gather(*(server.serve() for server in servers))
