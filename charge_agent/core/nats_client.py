import logging
from typing import Any, Dict, Optional

import nats
from nats.js.errors import BucketNotFoundError

from charge_agent.core.exceptions import StoreUnavailable

logging = logging.getLogger(__name__)


class NATSClient:
    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = dict(options or {})
        self.nc = None
        self.js = None

    async def connect(self):
        servers = self.options.get("servers", "nats://localhost:4222")
        logging.info(f"Connecting to NATS: {servers}")
        try:
            self.nc = await nats.connect(**self.options)
        except Exception as exc:
            raise StoreUnavailable(f"Cannot connect to NATS at {servers}: {exc}") from exc

        self.js = self.nc.jetstream()
        logging.info("Connected to NATS & JetStream")

    async def ensure_connected(self):
        if not self.nc or not self.nc.is_connected:
            await self.connect()

    async def key_value(self, bucket: str):
        await self.ensure_connected()

        try:
            kv = await self.js.key_value(bucket)
        except BucketNotFoundError as exc:
            logging.error(f"Key-value bucket {bucket} not found!")
            raise StoreUnavailable(
                f"JetStream key-value bucket '{bucket}' must be created by backend."
            ) from exc

        logging.info(f"Key-value bucket {bucket} found.")
        return kv

    async def close(self):
        if self.nc is None:
            return

        try:
            logging.info("Closing NATS connection...")
            await self.nc.drain()
        except Exception:
            logging.debug("NATS drain failed", exc_info=True)

        try:
            await self.nc.close()
        except Exception:
            logging.debug("NATS close failed", exc_info=True)

        logging.info("NATS connection closed.")
