"""Telegram deployment notifications."""

from __future__ import annotations

from typing import Mapping

import httpx

from unideploy.logging import get_logger
from unideploy.models import HookEvent
from unideploy.plugins.base import HookCall, Plugin, PluginDescriptor

LEVELS = ("debug", "info", "warning", "error")
LEVEL_ICONS = {
    "debug": "🔍",
    "info": "ℹ️",
    "warning": "⚠️",
    "error": "🚨",
    "success": "✅",
}
API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier(Plugin):
    """Sends deployment lifecycle messages to a Telegram chat.

    Arguments:
        TELEGRAM_ENABLED: "true" to send messages
        TELEGRAM_BOT_TOKEN: Bot API token
        TELEGRAM_CHAT_ID: Target chat
        TELEGRAM_NOTIFY_LEVEL: Minimum level sent (debug, info, warning, error)
        TELEGRAM_INCLUDE_LOGS: Attach container logs to failure messages
    """

    name = "telegram-notifier"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_seconds: float = 10.0) -> None:
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        self._client = client

    def register(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            description="Deployment notifications via Telegram",
            version="1.0.0",
            args={
                "TELEGRAM_ENABLED": "false",
                "TELEGRAM_BOT_TOKEN": "",
                "TELEGRAM_CHAT_ID": "",
                "TELEGRAM_NOTIFY_LEVEL": "info",
                "TELEGRAM_INCLUDE_LOGS": "true",
            },
            hooks={
                HookEvent.PRE_DEPLOY: [self.notify_deploy_start],
                HookEvent.POST_DEPLOY: [self.notify_deploy_success],
                HookEvent.HEALTH_CHECK_FAILED: [self.notify_health_check_failed],
                HookEvent.POST_CUTOVER: [self.notify_cutover],
                HookEvent.POST_ROLLBACK: [self.notify_rollback],
                HookEvent.POST_CLEANUP: [self.notify_cleanup],
            },
        )

    def activate(self, args: Mapping[str, str]) -> None:
        if args.get("TELEGRAM_ENABLED", "false").lower() != "true":
            return
        if not args.get("TELEGRAM_BOT_TOKEN") or not args.get("TELEGRAM_CHAT_ID"):
            raise ValueError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are required when enabled")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def should_send(level: str, threshold: str) -> bool:
        if level == "success":
            level = "info"
        try:
            return LEVELS.index(level) >= LEVELS.index(threshold)
        except ValueError:
            return True

    async def send(self, call: HookCall, message: str, level: str = "info") -> bool:
        """Send one message. Returns False when disabled, filtered, or rejected."""
        args = call.args
        if args.get("TELEGRAM_ENABLED", "false").lower() != "true":
            return False
        if not self.should_send(level, args.get("TELEGRAM_NOTIFY_LEVEL", "info")):
            return False

        app = call.context.app_name if call.context else "unideploy"
        text = f"{LEVEL_ICONS.get(level, LEVEL_ICONS['info'])} *{app}*: {message}"

        client = await self._get_client()
        response = await client.post(
            API_URL.format(token=args["TELEGRAM_BOT_TOKEN"]),
            json={
                "chat_id": args["TELEGRAM_CHAT_ID"],
                "text": text,
                "parse_mode": "Markdown",
            },
        )
        if not response.is_success:
            self.logger.warning(
                "telegram_send_failed",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            # Raising lets the dispatcher retry and count the failure
            response.raise_for_status()
        return True

    async def notify_deploy_start(self, call: HookCall) -> None:
        ctx = call.context
        ref = f"{ctx.image}:{ctx.tag}" if ctx else "unknown"
        await self.send(call, f"Deployment of `{ref}` started", "info")

    async def notify_deploy_success(self, call: HookCall) -> None:
        url = call.payload.get("url")
        message = "Deployment completed successfully"
        if url:
            message += f"\n{url}"
        await self.send(call, message, "success")

    async def notify_health_check_failed(self, call: HookCall) -> None:
        message = "Health check failed for deployment"
        logs = call.payload.get("logs")
        if logs and call.args.get("TELEGRAM_INCLUDE_LOGS", "true").lower() == "true":
            tail = "\n".join(str(logs).splitlines()[-10:])
            message += f"\n\nLast 10 log lines:\n```\n{tail}\n```"
        await self.send(call, message, "error")

    async def notify_cutover(self, call: HookCall) -> None:
        await self.send(call, "Traffic cut over to the new version", "info")

    async def notify_rollback(self, call: HookCall) -> None:
        restored = call.payload.get("restored_version")
        message = "Deployment rolled back"
        if restored:
            message += f" to `{restored}`"
        await self.send(call, message, "warning")

    async def notify_cleanup(self, call: HookCall) -> None:
        await self.send(call, "Cleanup completed", "debug")
