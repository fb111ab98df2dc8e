from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..core.logging_utils import log_event
from .models import Message
from .rest import RestClient
from .snowflake import Snowflake


class MessageHistory:
    """Chronological message window for one channel, paged backwards over REST."""

    def __init__(
        self,
        rest: RestClient,
        channel_id: Snowflake | int | str,
        *,
        page_size: int = 50,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._rest = rest
        self.channel_id = Snowflake.parse(channel_id)
        self.page_size = page_size
        self._logger = logger or logging.getLogger(__name__)
        self._messages: list[Message] = []
        self._ids: set[Snowflake] = set()
        self._loading = asyncio.Lock()
        self.exhausted = False

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def oldest_id(self) -> Optional[Snowflake]:
        return self._messages[0].id if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    async def load_initial(self) -> list[Message]:
        async with self._loading:
            page = await self._rest.fetch_messages(self.channel_id, limit=self.page_size)
            chronological = list(reversed(page))
            self._messages = chronological
            self._ids = {message.id for message in chronological}
            self.exhausted = len(page) < self.page_size
        log_event(
            self._logger,
            logging.DEBUG,
            "history.loaded",
            channel_id=self.channel_id,
            count=len(page),
            exhausted=self.exhausted,
        )
        return list(chronological)

    async def load_older(self) -> list[Message]:
        """Prepend the page before the oldest known message.

        Returns the newly added messages, or nothing when history is exhausted
        or another load is already running.
        """
        if self.exhausted or self._loading.locked():
            return []
        if not self._messages:
            return await self.load_initial()
        async with self._loading:
            page = await self._rest.fetch_messages(
                self.channel_id, limit=self.page_size, before=self.oldest_id
            )
            older = [message for message in reversed(page) if message.id not in self._ids]
            self._messages = older + self._messages
            self._ids.update(message.id for message in older)
            if len(page) < self.page_size:
                self.exhausted = True
        log_event(
            self._logger,
            logging.DEBUG,
            "history.paged",
            channel_id=self.channel_id,
            count=len(older),
            exhausted=self.exhausted,
        )
        return older

    def append_received(self, message: Message) -> bool:
        if message.channel_id != self.channel_id or message.id in self._ids:
            return False
        self._messages.append(message)
        self._ids.add(message.id)
        return True
