import json
import logging
from typing import Optional

import aio_pika

logger = logging.getLogger(__name__)

EXCHANGE = "balances"


class BalanceEventPublisher:
    """Publishes balance change notifications to a RabbitMQ topic exchange."""

    def __init__(self, url: str):
        self.url = url
        self.connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self.exchange: Optional[aio_pika.abc.AbstractExchange] = None

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.url)
        channel = await self.connection.channel()
        self.exchange = await channel.declare_exchange(EXCHANGE, aio_pika.ExchangeType.TOPIC)
        logger.info("publishing balance events to exchange %r", EXCHANGE)

    async def publish(self, key: str, payload: dict) -> None:
        message = aio_pika.Message(
            body=json.dumps({"type": key, **payload}).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self.exchange.publish(message, routing_key=key)

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
