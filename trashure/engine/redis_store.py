"""
TRASHURE Ledger: Redis backend
==============================

Shared authoritative store for multiple API workers / devices.

  - compare_and_apply : WATCH / MULTI / EXEC optimistic transaction, retried
                        on conflict up to CAS_MAX_RETRIES times
  - append            : same pattern over the owner's id list + record hash
  - change feed       : PUBLISH is queued inside the same MULTI as the write,
                        so the channel carries changes in commit order
                        (FEED_COLLECTIONS only: credentials are never published)

Key layout (prefix defaults to "trashure"):
  {prefix}:doc:{collection}:{key}          JSON document
  {prefix}:idx:{collection}                set of keys
  {prefix}:log:{collection}:{owner}        list of record ids
  {prefix}:logdoc:{collection}:{owner}     hash record id -> JSON
  {prefix}:changes                         pub/sub channel
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import redis

from engine.errors import LedgerError, LedgerWriteError
from engine.store import FEED_COLLECTIONS, ApplyFn, Doc, LedgerStore, _same_content, now_ms
from engine.subscriptions import Change, Listener, SubscriptionHub, join_path

logger = logging.getLogger("trashure.store.redis")

# ── Configuration ──────────────────────────────────────────────────────────────
REDIS_URL        = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX     = os.getenv("TRASHURE_REDIS_PREFIX", "trashure")
CAS_MAX_RETRIES  = int(os.getenv("TRASHURE_CAS_MAX_RETRIES", "25"))


class RedisLedgerStore(LedgerStore):

    def __init__(
        self,
        client:      redis.Redis,
        prefix:      str = REDIS_PREFIX,
        max_retries: int = CAS_MAX_RETRIES,
        clock:       Callable[[], int] = now_ms,
        hub:         Optional[SubscriptionHub] = None,
        feed_collections: Iterable[str] = FEED_COLLECTIONS,
    ):
        super().__init__(hub, feed_collections)
        self._client      = client
        self._prefix      = prefix
        self._max_retries = max_retries
        self._clock       = clock
        self._channel     = f"{prefix}:changes"
        self._pubsub      = None
        self._pubsub_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop        = threading.Event()

    @classmethod
    def from_url(cls, url: str = REDIS_URL, **kwargs) -> "RedisLedgerStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    # ── Keys ──────────────────────────────────────────────────────────────────
    def _doc_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:doc:{collection}:{key}"

    def _idx_key(self, collection: str) -> str:
        return f"{self._prefix}:idx:{collection}"

    def _log_key(self, collection: str, owner: str) -> str:
        return f"{self._prefix}:log:{collection}:{owner}"

    def _logdoc_key(self, collection: str, owner: str) -> str:
        return f"{self._prefix}:logdoc:{collection}:{owner}"

    def _message(self, path: str, doc: Doc) -> str:
        return json.dumps({"path": path, "doc": doc})

    @contextmanager
    def _redis_errors(self, op: str, write: bool = True):
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"[REDIS] {op} failed: {e}")
            if write:
                raise LedgerWriteError(f"{op} failed: {e}") from e
            raise LedgerError(f"{op} failed: {e}") from e

    # ── Documents ─────────────────────────────────────────────────────────────
    def get(self, collection: str, key: str) -> Optional[Doc]:
        with self._redis_errors("get", write=False):
            raw = self._client.get(self._doc_key(collection, key))
        return json.loads(raw) if raw else None

    def put_if_absent(self, collection: str, key: str, doc: Doc) -> Tuple[Doc, bool]:
        doc_key = self._doc_key(collection, key)
        path    = join_path(collection, key)
        with self._redis_errors("put_if_absent"):
            with self._client.pipeline() as pipe:
                for attempt in range(1, self._max_retries + 1):
                    try:
                        pipe.watch(doc_key)
                        raw = pipe.get(doc_key)
                        if raw:
                            pipe.unwatch()
                            return json.loads(raw), False
                        stored = {**doc, "rev": 1}
                        pipe.multi()
                        pipe.set(doc_key, json.dumps(stored))
                        pipe.sadd(self._idx_key(collection), key)
                        if self.feeds(collection):
                            pipe.publish(self._channel, self._message(path, stored))
                        pipe.execute()
                        return stored, True
                    except redis.WatchError:
                        logger.info(f"[CAS] Create race on {path} (attempt {attempt})")
        raise LedgerWriteError(f"put_if_absent on {path} gave up after {self._max_retries} conflicts")

    def compare_and_apply(self, collection: str, key: str, fn: ApplyFn) -> Doc:
        doc_key = self._doc_key(collection, key)
        path    = join_path(collection, key)
        with self._redis_errors("compare_and_apply"):
            with self._client.pipeline() as pipe:
                for attempt in range(1, self._max_retries + 1):
                    try:
                        pipe.watch(doc_key)
                        raw     = pipe.get(doc_key)
                        current = json.loads(raw) if raw else None
                        updated = fn(copy.deepcopy(current))
                        if updated is None:
                            raise ValueError("compare_and_apply fn must return a document")
                        if current is not None and _same_content(current, updated):
                            pipe.unwatch()
                            return current
                        stored = {**updated, "rev": (current or {}).get("rev", 0) + 1}
                        pipe.multi()
                        pipe.set(doc_key, json.dumps(stored))
                        pipe.sadd(self._idx_key(collection), key)
                        if self.feeds(collection):
                            pipe.publish(self._channel, self._message(path, stored))
                        pipe.execute()
                        return stored
                    except redis.WatchError:
                        logger.info(f"[CAS] Conflict on {path} (attempt {attempt}), retrying")
        raise LedgerWriteError(f"compare_and_apply on {path} gave up after {self._max_retries} conflicts")

    def scan(self, collection: str) -> Dict[str, Doc]:
        with self._redis_errors("scan", write=False):
            keys = sorted(self._client.smembers(self._idx_key(collection)))
            if not keys:
                return {}
            raws = self._client.mget([self._doc_key(collection, k) for k in keys])
        return {k: json.loads(raw) for k, raw in zip(keys, raws) if raw}

    # ── Append-only logs ──────────────────────────────────────────────────────
    def append(self, collection: str, owner: str, record_id: str, doc: Doc) -> Tuple[Doc, bool]:
        list_key = self._log_key(collection, owner)
        hash_key = self._logdoc_key(collection, owner)
        path     = join_path(collection, owner, record_id)
        with self._redis_errors("append"):
            with self._client.pipeline() as pipe:
                for attempt in range(1, self._max_retries + 1):
                    try:
                        pipe.watch(list_key, hash_key)
                        existing = pipe.hget(hash_key, record_id)
                        if existing:
                            pipe.unwatch()
                            return json.loads(existing), False
                        length  = pipe.llen(list_key)
                        last_ts = 0
                        if length:
                            last_raw = pipe.hget(hash_key, pipe.lindex(list_key, -1))
                            last_ts  = json.loads(last_raw)["timestamp"] if last_raw else 0
                        stored = {
                            **doc,
                            "id":        record_id,
                            "timestamp": max(self._clock(), last_ts),
                            "seq":       length,
                        }
                        pipe.multi()
                        pipe.hset(hash_key, record_id, json.dumps(stored))
                        pipe.rpush(list_key, record_id)
                        if self.feeds(collection):
                            pipe.publish(self._channel, self._message(path, stored))
                        pipe.execute()
                        return stored, True
                    except redis.WatchError:
                        logger.info(f"[APPEND] Conflict on {path} (attempt {attempt}), retrying")
        raise LedgerWriteError(f"append on {path} gave up after {self._max_retries} conflicts")

    def read_log(self, collection: str, owner: str) -> List[Doc]:
        with self._redis_errors("read_log", write=False):
            ids = self._client.lrange(self._log_key(collection, owner), 0, -1)
            if not ids:
                return []
            raws = self._client.hmget(self._logdoc_key(collection, owner), ids)
        return [json.loads(raw) for raw in raws if raw]

    # ── Change feed ───────────────────────────────────────────────────────────
    def subscribe(self, path: str, callback: Listener, prime=None):
        # Join the channel before the initial snapshot is read so no commit
        # falls between the snapshot and the first delivered message.
        self._ensure_pubsub()
        return super().subscribe(path, callback, prime)

    def _ensure_pubsub(self) -> None:
        with self._pubsub_lock:
            if self._pubsub is None:
                with self._redis_errors("subscribe", write=False):
                    pubsub = self._client.pubsub()
                    pubsub.subscribe(self._channel)
                self._pubsub = pubsub

    def pump(self, timeout: float = 0.0) -> int:
        """Dispatch every change message already waiting. Returns the count."""
        self._ensure_pubsub()
        delivered = 0
        while True:
            message = self._pubsub.get_message(timeout=timeout)
            if message is None:
                return delivered
            timeout = 0.0
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"[FEED] Dropping malformed change message: {e}")
                continue
            self.hub.dispatch(Change(path=payload["path"], doc=payload.get("doc")))
            delivered += 1

    def start_listener(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ensure_pubsub()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._listen_loop, name="trashure-change-feed", daemon=True,
        )
        self._thread.start()
        logger.info(f"[FEED] Listening on {self._channel}")

    def _listen_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.pump(timeout=1.0)
            except redis.RedisError as e:
                logger.error(f"[FEED] Change feed read failed: {e}")
                self._stop.wait(1.0)

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        with self._pubsub_lock:
            if self._pubsub is not None:
                try:
                    self._pubsub.close()
                except redis.RedisError as e:
                    logger.warning(f"[FEED] Closing pubsub failed: {e}")
                self._pubsub = None
