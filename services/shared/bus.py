"""
Shared — Redis Streams による永続トピックイベントバス

Redis Pub/Sub は fire-and-forget 方式で、購読側が停止している間に
発行されたイベントは失われる。このアダプタは publish/subscribe の形は
そのままに Redis Streams を使い、注文 Saga が必要とする配送保証を得る:

  ┌───────────┐  XADD order_events   ┌──────────────────────────────┐
  │ publisher │ ───────────────────▶ │ stream  "order_events"       │
  └───────────┘  routing_key=...     │   group "orders-user-events" │──▶ handler
                                     │   group "<svc>.<private id>" │──▶ handler
                                     └──────────────────────────────┘

- トピック(エクスチェンジ)ごとに 1 ストリーム。ルーティングキーはフィールドで運ぶ
- 購読ごとに 1 コンシューマグループ。名前付きグループは同名で購読する全プロセスで
  共有され(負荷分散・永続)、匿名購読は停止時に破棄される専用グループを持つ
- メッセージはハンドラが正常終了してから ACK (XACK) する。未 ACK のものは
  ペンディングリストから再読し、停止したコンシューマに残ったものは生きている
  コンシューマが引き取る
- 失敗し続けるハンドラのメッセージは ``max_deliveries`` 回でデッドレターへ送る

接続はスーパーバイザータスクが管理する。(再)接続してエクスチェンジを再宣言し、
全購読を再バインドしてコンシューマを再起動する。接続が切れるたびに
一定間隔で無期限にリトライする。
"""

import asyncio
import json
import logging
import os
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .events import Envelope
from .routing import routing_key_matches

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], str], Awaitable[None]]

EXCHANGE_REGISTRY_KEY = "bus:exchanges"
CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class BusUnavailableError(Exception):
    """バスに有効な接続がなく、イベントは発行されなかった"""


@dataclass
class Subscription:
    topic: str
    pattern: str
    handler: Handler
    group: str
    durable: bool

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.topic}.dead_letter"


def _default_client_factory(url: str) -> aioredis.Redis:
    return aioredis.from_url(url, decode_responses=False)


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode()
    return value


def _field(fields: dict, name: str) -> Any:
    if name.encode() in fields:
        return fields[name.encode()]
    return fields.get(name)


class EventBus:
    """
    Redis Streams を使う publish/subscribe クライアント

    各サービスの組み立て部 (FastAPI の lifespan) で 1 つだけ生成し、
    発行・購読するすべてのコードに渡す。購読は ``start()`` より前に登録する。
    """

    def __init__(
        self,
        url: str,
        *,
        service_name: str,
        consumer_name: str | None = None,
        retry_delay: float = 5.0,
        block_ms: int = 5000,
        batch_size: int = 10,
        claim_idle_ms: int = 60_000,
        max_deliveries: int = 5,
        redelivery_delay: float = 1.0,
        heartbeat: float = 15.0,
        max_stream_length: int = 100_000,
        client_factory: Callable[[str], aioredis.Redis] = _default_client_factory,
    ) -> None:
        self.url = url
        self.service_name = service_name
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self.retry_delay = retry_delay
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries
        self.redelivery_delay = redelivery_delay
        self.heartbeat = heartbeat
        self.max_stream_length = max_stream_length
        self._client_factory = client_factory

        self._client: aioredis.Redis | None = None
        self._exchanges: set[str] = set()
        self._subscriptions: list[Subscription] = []
        self._attempts: dict[str, int] = {}
        self._private_id = uuid4().hex[:12]
        self._supervisor: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._lost = asyncio.Event()
        self._closing = False

    # ── トポロジ ────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def declare_exchange(self, topic: str) -> None:
        """このサービスが発行するトピックを登録する。"""
        self._exchanges.add(topic)

    def subscribe(
        self,
        topic: str,
        pattern: str,
        handler: Handler,
        consumer_group: str | None = None,
    ) -> Subscription:
        """
        ``topic`` 上でルーティングキーが ``pattern`` にマッチするメッセージを
        ``handler`` にバインドする。

        ``consumer_group`` を指定すると永続バインドになり、同じグループ名を使う
        他のプロセスと共有される。指定しなければこのプロセス専用になる。
        """
        if self._supervisor is not None:
            raise RuntimeError("subscriptions must be registered before start()")

        durable = consumer_group is not None
        group = consumer_group or f"{self.service_name}.{self._private_id}"
        sub = Subscription(topic, pattern, handler, group, durable)
        self._subscriptions.append(sub)
        return sub

    # ── ライフサイクル ───────────────────────────────

    async def start(self) -> None:
        """接続スーパーバイザーをバックグラウンドで起動する。"""
        if self._supervisor is None:
            self._closing = False
            self._supervisor = asyncio.create_task(self._supervise())

    async def wait_until_connected(self) -> None:
        await self._connected.wait()

    async def close(self) -> None:
        self._closing = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        if self._client is not None:
            await self._release(self._client)
        logger.info("Event bus closed (%s)", self.service_name)

    async def _supervise(self) -> None:
        while not self._closing:
            client = self._client_factory(self.url)
            try:
                await client.ping()
                await self._declare(client)
                self._lost.clear()
                # 代入 1 回で全発行者が見るハンドルを差し替える
                self._client = client
                self._connected.set()
                logger.info(
                    "Event bus connected (%s, consumer %s)",
                    self.service_name,
                    self.consumer_name,
                )
                await self._run(client)
            except CONNECTION_ERRORS as e:
                logger.warning(
                    "Event bus unavailable: %s; retrying in %.1fs", e, self.retry_delay
                )
            except Exception:
                logger.exception(
                    "Event bus failed; reconnecting in %.1fs", self.retry_delay
                )
            finally:
                if self._closing and self._client is client:
                    # この時点でコンシューマは停止済みで、グループを読む者はいない
                    await self._drop_private_groups(client)
                await self._release(client)

            if not self._closing:
                await asyncio.sleep(self.retry_delay)

    async def _release(self, client: aioredis.Redis) -> None:
        if self._client is client:
            self._client = None
        self._connected.clear()
        try:
            await client.aclose()
        except CONNECTION_ERRORS:
            logger.debug("Error closing redis connection", exc_info=True)

    async def _declare(self, client: aioredis.Redis) -> None:
        if self._exchanges:
            await client.sadd(EXCHANGE_REGISTRY_KEY, *sorted(self._exchanges))

        for sub in self._subscriptions:
            try:
                await client.xgroup_create(sub.topic, sub.group, id="$", mkstream=True)
                logger.info(
                    "Bound %s on %s to group %s", sub.pattern, sub.topic, sub.group
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def _drop_private_groups(self, client: aioredis.Redis) -> None:
        for sub in self._subscriptions:
            if sub.durable:
                continue
            try:
                await client.xgroup_destroy(sub.topic, sub.group)
            except (ResponseError, *CONNECTION_ERRORS):
                logger.debug("Could not destroy group %s", sub.group, exc_info=True)

    async def _run(self, client: aioredis.Redis) -> None:
        """コンシューマと死活監視を、どれかが失敗するまで動かす。"""
        tasks = [asyncio.create_task(self._watch(client))]
        tasks += [
            asyncio.create_task(self._consume(client, sub)) for sub in self._subscriptions
        ]
        try:
            done, _pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _watch(self, client: aioredis.Redis) -> None:
        while True:
            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self.heartbeat)
            except asyncio.TimeoutError:
                await client.ping()
                continue
            raise RedisConnectionError("publish failed on the current connection")

    # ── 発行 ──────────────────────────────

    async def publish(self, topic: str, routing_key: str, payload: dict[str, Any]) -> str:
        """
        ``topic`` にイベントを追記する。

        有効な接続がない、またはサーバーが書き込みを拒否した場合は
        BusUnavailableError を送出する。フォールバックするか捨てるかは呼び出し側が決める。
        """
        client = self._client
        if client is None:
            raise BusUnavailableError(f"event bus is not connected; {routing_key} not sent")

        fields = {
            b"routing_key": routing_key.encode(),
            b"body": json.dumps(payload, default=str).encode(),
            b"content_type": b"application/json",
            b"publisher": self.service_name.encode(),
        }
        try:
            message_id = await client.xadd(
                topic,
                fields,
                maxlen=self.max_stream_length,
                approximate=True,
            )
        except CONNECTION_ERRORS as e:
            self._lost.set()
            raise BusUnavailableError(f"publishing {routing_key} failed: {e}") from e
        except RedisError as e:
            # MISCONF / OOM / READONLY: サーバーは生きているが書き込みを拒否している
            raise BusUnavailableError(f"publishing {routing_key} rejected: {e}") from e

        logger.debug("Published %s to %s (%s)", routing_key, topic, _text(message_id))
        return _text(message_id)

    async def publish_event(self, event: Envelope, routing_key: str | None = None) -> str:
        return await self.publish(
            event.topic, routing_key or event.routing_key, event.to_payload()
        )

    async def publish_best_effort(
        self, event: Envelope, routing_key: str | None = None
    ) -> bool:
        """発行する。バスが使えなければ警告を出して捨てる。"""
        key = routing_key or event.routing_key
        try:
            await self.publish_event(event, key)
        except BusUnavailableError as e:
            logger.warning("Dropped %s event: %s", key, e)
            return False
        return True

    # ── 購読 ───────────────────────────────

    async def _consume(self, client: aioredis.Redis, sub: Subscription) -> None:
        loop = asyncio.get_running_loop()
        claim_interval = self.claim_idle_ms / 1000
        last_claim: float | None = None
        while True:
            # まず自分のペンディング (配送済み・未 ACK) を読む
            entries = await self._read(client, sub, "0")
            if not entries:
                self._forget_attempts(sub)

            if not entries and sub.durable:
                if last_claim is None or loop.time() - last_claim >= claim_interval:
                    last_claim = loop.time()
                    entries = await self._claim(client, sub)

            if not entries:
                entries = await self._read(client, sub, ">", block=self.block_ms)

            for message_id, fields in entries:
                await self.deliver(client, sub, message_id, fields)

            if not entries:
                await asyncio.sleep(0)

    def _forget_attempts(self, sub: Subscription) -> None:
        """``sub`` のペンディングが空になったら失敗回数を捨てる。"""
        prefix = f"{sub.group}:"
        for key in [key for key in self._attempts if key.startswith(prefix)]:
            del self._attempts[key]

    async def _read(
        self,
        client: aioredis.Redis,
        sub: Subscription,
        stream_id: str,
        block: int | None = None,
    ) -> list:
        response = await client.xreadgroup(
            sub.group,
            self.consumer_name,
            {sub.topic: stream_id},
            count=self.batch_size,
            block=block,
        )
        entries: list = []
        for _stream, stream_entries in response or []:
            entries.extend(stream_entries)
        return entries

    async def _claim(self, client: aioredis.Redis, sub: Subscription) -> list:
        result = await client.xautoclaim(
            sub.topic,
            sub.group,
            self.consumer_name,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        claimed = result[1] if result else []
        if claimed:
            logger.info("Claimed %d stale messages on %s", len(claimed), sub.group)
        return claimed

    async def deliver(
        self,
        client: aioredis.Redis,
        sub: Subscription,
        message_id: bytes | str,
        fields: dict | None,
    ) -> None:
        """ストリームエントリ 1 件を購読のハンドラに渡し、ACK する。"""
        msg_id = _text(message_id)

        if not fields:
            # ペンディング中にストリームからトリムされた
            await client.xack(sub.topic, sub.group, message_id)
            return

        routing_key = _text(_field(fields, "routing_key"))
        if routing_key is None or not routing_key_matches(sub.pattern, routing_key):
            await client.xack(sub.topic, sub.group, message_id)
            return

        try:
            payload = json.loads(_field(fields, "body"))
        except (TypeError, ValueError):
            logger.error("Malformed %s message %s on %s", routing_key, msg_id, sub.topic)
            await self._dead_letter(client, sub, message_id, fields, "malformed body")
            return

        key = f"{sub.group}:{msg_id}"
        try:
            await sub.handler(payload, routing_key)
        except Exception as e:
            attempts = self._attempts.get(key, 0) + 1
            logger.exception(
                "Handler for %s failed on message %s (attempt %d/%d)",
                routing_key,
                msg_id,
                attempts,
                self.max_deliveries,
            )
            if attempts >= self.max_deliveries:
                self._attempts.pop(key, None)
                await self._dead_letter(client, sub, message_id, fields, repr(e))
            else:
                self._attempts[key] = attempts
                await asyncio.sleep(self.redelivery_delay)
            return

        self._attempts.pop(key, None)
        await client.xack(sub.topic, sub.group, message_id)

    async def _dead_letter(
        self,
        client: aioredis.Redis,
        sub: Subscription,
        message_id: bytes | str,
        fields: dict,
        reason: str,
    ) -> None:
        record = dict(fields)
        record[b"error"] = reason.encode()
        record[b"group"] = sub.group.encode()
        record[b"original_id"] = _text(message_id).encode()
        await client.xadd(
            sub.dead_letter_stream,
            record,
            maxlen=self.max_stream_length,
            approximate=True,
        )
        await client.xack(sub.topic, sub.group, message_id)
        logger.error(
            "Dead-lettered message %s from %s to %s: %s",
            _text(message_id),
            sub.group,
            sub.dead_letter_stream,
            reason,
        )
