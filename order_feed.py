"""
Realtime Change Feed
====================
Subscribes to Supabase postgres changes on the orders table and
applies each event to the store as a whole-record replacement.

Subscription failures are logged and leave the store as it is
(local data keeps being served).
"""

import logging
from typing import Dict, Any, Optional, Tuple, Union

from supabase import acreate_client

from store import OrderStore


logger = logging.getLogger(__name__)


CHANNEL_PREFIX = "orders-changes"


def normalize_change(payload: Dict[str, Any]) -> Optional[Tuple[str, Union[Dict[str, Any], str]]]:
    """
    Reduce a postgres-changes payload to (event, record or id).

    Handles the Python client shape ({"data": {"type", "record",
    "old_record"}}) and the JS client shape ({"eventType", "new", "old"}).

    Returns:
        ("insert" | "update", record) or ("delete", id); None if unusable
    """
    if not isinstance(payload, dict):
        return None

    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return None

    event = str(data.get("type") or data.get("eventType") or "").lower()
    new_record = data.get("record", data.get("new"))
    old_record = data.get("old_record", data.get("old"))

    if event in ("insert", "update"):
        if not isinstance(new_record, dict) or not new_record.get("id"):
            return None
        return event, new_record

    if event == "delete":
        if not isinstance(old_record, dict) or not old_record.get("id"):
            return None
        return event, str(old_record["id"])

    return None


class RealtimeFeed:
    """Keeps an OrderStore in sync with remote inserts, updates and deletes."""

    def __init__(
        self,
        store: OrderStore,
        url: Optional[str] = None,
        key: Optional[str] = None,
        table: str = "orders",
        client: Optional[Any] = None
    ):
        self.store = store
        self.url = url
        self.key = key
        self.table = table
        self.client = client
        self.channel = None

        # Stats
        self.event_count = 0
        self.applied_count = 0
        self.ignored_count = 0

    @property
    def is_subscribed(self) -> bool:
        return self.channel is not None

    async def start(self) -> bool:
        """
        Open the subscription.

        Returns:
            True if subscribed
        """
        if self.is_subscribed:
            return True

        try:
            if self.client is None:
                if not (self.url and self.key):
                    logger.info("Realtime disabled (no Supabase credentials)")
                    return False
                self.client = await acreate_client(self.url, self.key)

            channel = self.client.channel(f"{CHANNEL_PREFIX}-{self.table}")
            channel.on_postgres_changes(
                "*",
                schema="public",
                table=self.table,
                callback=self.handle_payload
            )
            await channel.subscribe()

        except Exception as e:
            logger.warning(f"Realtime subscription failed, staying on local data: {str(e)}")
            return False

        self.channel = channel
        logger.info(f"Realtime subscription active (table: {self.table})")
        return True

    async def stop(self):
        """Close the subscription."""
        if not self.is_subscribed:
            return

        try:
            await self.client.remove_channel(self.channel)
        except Exception as e:
            logger.warning(f"Error closing realtime channel: {str(e)}")
        finally:
            self.channel = None

        logger.info("Realtime subscription closed")

    def handle_payload(self, payload: Dict[str, Any]) -> bool:
        """
        Apply one raw change payload to the store.

        Returns:
            True if the store changed
        """
        self.event_count += 1
        change = normalize_change(payload)

        if change is None:
            self.ignored_count += 1
            logger.warning("Ignoring unusable realtime payload")
            return False

        event, record = change
        changed = self.store.apply_remote_change(event, record)

        if changed:
            self.applied_count += 1
        return changed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "subscribed": self.is_subscribed,
            "table": self.table,
            "events": self.event_count,
            "applied": self.applied_count,
            "ignored": self.ignored_count,
        }
