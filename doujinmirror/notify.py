#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Optional

from telegram import Bot

LOG = logging.getLogger("doujinmirror.notify")


class AdminNotifier:
    """Send short status lines to the admin chat, if one is configured."""

    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None, bot: Optional[Bot] = None):
        self.token = (token or "").strip()
        self.chat_id = (chat_id or "").strip()
        self._bot = bot

    @property
    def enabled(self) -> bool:
        return bool(self.chat_id and (self.token or self._bot is not None))

    def _get_bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(self.token)
        return self._bot

    async def send(self, text: str) -> None:
        if not self.enabled:
            return
        try:
            await self._get_bot().send_message(chat_id=self.chat_id, text=text)
        except Exception as exc:
            LOG.warning("Failed to notify admin: %s", exc)
