from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from ..common import log_event
from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._records_collection_ref: Any | None = None
        self._events_collection_ref: Any | None = None

    async def connect(self) -> None:
        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            ledger_key=self.settings.ledger_key,
        )

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._initialize_collection_refs()
        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            record_collection=self.settings.record_collection,
        )

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()

        records_ref = self._require_records_collection()
        await asyncio.to_thread(lambda: list(records_ref.limit(1).stream()))

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        self._records_collection_ref = None
        self._events_collection_ref = None
        self._firestore = None
