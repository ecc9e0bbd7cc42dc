"""Dispatcher: one inbound message from policy gate to reply delivery.

Stages:
1. Policy gate (drops are logged and audited, pairing replies sent)
2. App message sub-types (links rendered inline, file notices skipped)
3. Media download through the throttled queue, SILK decoding, local save
4. Envelope construction and the reply pipeline
5. Delivery of every reply payload back to the conversation
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.dispatch.delivery import OutboundDelivery
from gewe_bridge.dispatch.pairing import PairingStore, build_pairing_reply
from gewe_bridge.dispatch.reply import ReplyPipeline
from gewe_bridge.gewe.client import GeweClient
from gewe_bridge.gewe.xml import extract_app_msg_type, extract_file_name, render_link_body
from gewe_bridge.media.download_queue import DownloadQueue
from gewe_bridge.media.silk import VoiceTranscoder, looks_like_silk
from gewe_bridge.media.store import MediaStore, SavedMedia, fetch_remote_media
from gewe_bridge.models import (
    AuditEvent,
    AuditEventType,
    InboundEnvelope,
    InboundMessage,
    MsgType,
    PolicyDecision,
    ReplyPayload,
    RiskLevel,
)
from gewe_bridge.policy.gate import PolicyGate

if TYPE_CHECKING:
    import httpx

    from gewe_bridge.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

CHANNEL_ID = "gewe"
APP_MSG_LINK = 5
APP_MSG_FILE = 6
APP_MSG_FILE_NOTICE = 74
_DOWNLOAD_TYPES = frozenset({MsgType.IMAGE, MsgType.VOICE, MsgType.VIDEO, MsgType.APP})


class Dispatcher:
    def __init__(
        self,
        config: GeweAccountConfig,
        gate: PolicyGate,
        client: GeweClient,
        pipeline: ReplyPipeline,
        delivery: OutboundDelivery,
        pairing_store: PairingStore,
        download_queue: DownloadQueue,
        media_store: MediaStore,
        transcoder: VoiceTranscoder,
        audit_logger: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._gate = gate
        self._client = client
        self._pipeline = pipeline
        self._delivery = delivery
        self._pairing = pairing_store
        self._queue = download_queue
        self._store = media_store
        self._transcoder = transcoder
        self._audit = audit_logger
        self._transport = transport

    @property
    def account_id(self) -> str:
        return self._config.account_id

    @staticmethod
    def reply_target(message: InboundMessage) -> str:
        return message.from_id if message.is_group_chat else message.sender_id

    async def handle(self, message: InboundMessage) -> None:
        decision = self._gate.evaluate(message, self._pairing.read_allow_from())
        if not decision.proceed:
            await self._on_drop(message, decision)
            return

        raw_body = decision.raw_body
        xml = message.xml
        msg_type = message.msg_type

        if msg_type == MsgType.APP and xml:
            app_type = extract_app_msg_type(xml)
            if app_type == APP_MSG_LINK:
                await self.dispatch(message, decision, render_link_body(xml) or raw_body)
                return
            if app_type == APP_MSG_FILE_NOTICE:
                logger.info("File notification %s received, skipping download", message.new_message_id)
                return
            if app_type != APP_MSG_FILE:
                logger.info("Unhandled app message type %s", app_type if app_type is not None else "unknown")
                return

        if msg_type not in _DOWNLOAD_TYPES or not xml:
            await self.dispatch(message, decision, raw_body)
            return

        key = message.dedupe_key

        async def download_job() -> None:
            await self._download_and_dispatch(message, decision, xml)

        if not self._queue.enqueue(key, download_job):
            logger.info("Duplicate download %s skipped", key)

    async def _on_drop(self, message: InboundMessage, decision: PolicyDecision) -> None:
        reason = decision.reason.value if decision.reason else "unknown"
        logger.info(
            "[%s] drop message %s from %s (%s)",
            self.account_id, message.new_message_id, message.sender_id, reason,
        )
        self._log_audit(
            AuditEventType.POLICY_DROP, "policy_gate", "dropped", RiskLevel.INFO,
            {"reason": reason, "sender_id": message.sender_id, "from_id": message.from_id},
        )
        if decision.pairing_required:
            await self._issue_pairing(message)

    async def _issue_pairing(self, message: InboundMessage) -> None:
        code, created = self._pairing.upsert_request(message.sender_id, message.sender_name)
        if not created:
            return
        self._log_audit(
            AuditEventType.PAIRING_ISSUED, "pairing_request", "success", RiskLevel.LOW,
            {"sender_id": message.sender_id},
        )
        try:
            await self._delivery.deliver(
                ReplyPayload(text=build_pairing_reply(message.sender_id, code)),
                self.reply_target(message),
            )
        except Exception as e:
            logger.error("[%s] pairing reply failed for %s: %s", self.account_id, message.sender_id, e)

    async def _download_and_dispatch(
        self, message: InboundMessage, decision: PolicyDecision, xml: str,
    ) -> None:
        try:
            saved = await self._download_media(message, xml)
        except Exception as e:
            logger.error("[%s] media download failed: %s", self.account_id, e)
            saved = None
        await self.dispatch(message, decision, decision.raw_body, saved)

    async def _download_media(self, message: InboundMessage, xml: str) -> SavedMedia:
        msg_type = message.msg_type
        if msg_type == MsgType.IMAGE:
            file_url = await self._client.download_image_any(xml)
        elif msg_type == MsgType.VOICE:
            file_url = await self._client.download_voice(xml, message.message_id)
        elif msg_type == MsgType.VIDEO:
            file_url = await self._client.download_video(xml)
        else:
            file_url = await self._client.download_file(xml)

        max_bytes = self._config.media_max_bytes
        fetched = await fetch_remote_media(file_url, max_bytes, transport=self._transport)
        buffer = fetched.buffer
        content_type = fetched.content_type
        file_name = extract_file_name(xml) if msg_type == MsgType.APP else fetched.file_name

        if msg_type == MsgType.VOICE and looks_like_silk(buffer, content_type, file_name):
            decoded = await self._transcoder.decode(buffer)
            if decoded is not None:
                buffer, content_type, file_name = (
                    decoded.buffer, decoded.content_type, decoded.file_name,
                )

        return self._store.save(buffer, content_type, "inbound", max_bytes, file_name)

    def build_envelope(
        self,
        message: InboundMessage,
        decision: PolicyDecision,
        body: str,
        media: SavedMedia | None = None,
    ) -> InboundEnvelope:
        is_group = message.is_group_chat
        peer = message.from_id if is_group else message.sender_id
        if is_group:
            label = f"group:{message.from_id}"
        else:
            label = message.sender_name or f"user:{message.sender_id}"
        return InboundEnvelope(
            body=body,
            raw_body=body,
            from_=f"{CHANNEL_ID}:group:{message.from_id}" if is_group else f"{CHANNEL_ID}:{message.sender_id}",
            to=f"{CHANNEL_ID}:{self.reply_target(message)}",
            session_key=f"{CHANNEL_ID}:{self.account_id}:{'group' if is_group else 'direct'}:{peer}",
            account_id=self.account_id,
            chat_type="group" if is_group else "direct",
            sender_id=message.sender_id,
            sender_name=message.sender_name or None,
            conversation_label=label,
            command_authorized=decision.command_authorized,
            message_sid=message.new_message_id,
            timestamp=message.timestamp,
            media_path=str(media.path) if media else None,
            media_type=media.content_type if media else None,
            group_system_prompt=decision.group_system_prompt,
        )

    async def dispatch(
        self,
        message: InboundMessage,
        decision: PolicyDecision,
        body: str,
        media: SavedMedia | None = None,
    ) -> None:
        envelope = self.build_envelope(message, decision, body, media)
        self._log_audit(
            AuditEventType.DISPATCH, "dispatch", "success", RiskLevel.INFO,
            {"message_sid": envelope.message_sid, "chat_type": envelope.chat_type},
        )
        payloads = await self._pipeline.run(envelope)
        to_wxid = self.reply_target(message)
        for payload in payloads:
            try:
                await self._delivery.deliver(payload, to_wxid)
            except Exception as e:
                logger.error("[%s] GeWe reply failed: %s", self.account_id, e)
                self._log_audit(
                    AuditEventType.DELIVERY_FAILURE, "deliver", "failure", RiskLevel.MEDIUM,
                    {"to_wxid": to_wxid, "error": str(e)},
                )

    def _log_audit(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object],
    ) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            account_id=self.account_id,
            action=action,
            result=result,
            risk_level=risk_level,
            details=details,
        ))
