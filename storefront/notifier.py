"""
Storefront Service — メール通知

通知は fire-and-forget。送信失敗はログに残すだけで、
注文の状態や API のレスポンスには一切影響させない。
"""

import asyncio
import logging
from email.message import EmailMessage
from typing import Any

import aiosmtplib

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = "order_confirmed"

TEMPLATES: dict[str, tuple[str, str]] = {
    ORDER_CONFIRMED: (
        "Order Confirmation",
        """
        <h1>Thank you for your purchase!</h1>
        <p>Your order has been confirmed. You can now access the full game content.</p>
        <p>Game: {game_name}</p>
        <p>Order ID: {order_id}</p>
        <p>Amount: ${amount}</p>
        """,
    ),
}


def render(template: str, context: dict[str, Any]) -> tuple[str, str]:
    subject, body = TEMPLATES[template]
    return subject, body.format(**context)


class MailNotifier:
    """SMTP リレー経由でメールを送る通知ディスパッチャ"""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, recipient: str, template: str, context: dict[str, Any]) -> None:
        """送信をバックグラウンドタスクとして開始し、すぐに戻る。"""
        task = asyncio.create_task(self.send(recipient, template, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, recipient: str, template: str, context: dict[str, Any]) -> bool:
        try:
            subject, html = render(template, context)
            message = EmailMessage()
            message["From"] = self.sender
            message["To"] = recipient
            message["Subject"] = subject
            message.set_content(html, subtype="html")

            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=self.port == 465,
            )
        except Exception:
            logger.exception("Failed to send %s mail to %s", template, recipient)
            return False
        logger.info("Sent %s mail to %s", template, recipient)
        return True

    async def aclose(self) -> None:
        """送信中のメールを待ってから終了する。"""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
