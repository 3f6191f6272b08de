"""
commands.py — Prefix command handling

Parses MESSAGE_CREATE events like "!ping a b" into a command name and
arguments and calls the registered handler. Bot authors and messages
without the prefix are ignored.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable

from disgordian.events import EventRouter
from disgordian.gateway.protocol import DispatchEvent
from disgordian.observability.logger import get_logger
from disgordian.rest.client import RestClient

log = get_logger(__name__)

MESSAGE_CREATE = "MESSAGE_CREATE"

CommandHandler = Callable[[DispatchEvent, list[str]], Any]


def parse_command(content: str, prefix: str) -> tuple[str, list[str]] | None:
    """Split "!name arg1 arg2" into ("name", ["arg1", "arg2"]), or None."""
    if not content.startswith(prefix):
        return None
    parts = content[len(prefix):].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandRegistry:
    def __init__(self, prefix: str = "!") -> None:
        self.prefix = prefix
        self._commands: dict[str, CommandHandler] = {}

    def register(self, name: str, handler: CommandHandler) -> None:
        self._commands[name.lower()] = handler

    def command(self, name: str) -> Callable[[CommandHandler], CommandHandler]:
        def _register(handler: CommandHandler) -> CommandHandler:
            self.register(name, handler)
            return handler
        return _register

    @property
    def names(self) -> list[str]:
        return sorted(self._commands)

    def install(self, router: EventRouter) -> None:
        router.subscribe(MESSAGE_CREATE, self.handle_message)

    async def handle_message(self, event: DispatchEvent) -> bool:
        """Run the command in a MESSAGE_CREATE event. Returns True if one ran."""
        payload = event.payload if isinstance(event.payload, dict) else {}
        if (payload.get("author") or {}).get("bot"):
            return False

        parsed = parse_command(payload.get("content") or "", self.prefix)
        if parsed is None:
            return False
        name, args = parsed

        handler = self._commands.get(name)
        if handler is None:
            log.info("commands.unknown", command=name)
            return False

        log.info("commands.run", command=name, args=args, channel_id=payload.get("channel_id"))
        result = handler(event, args)
        if inspect.isawaitable(result):
            await result
        return True


def register_builtin_commands(registry: CommandRegistry, rest: RestClient) -> None:
    """Add the commands every bot gets: currently just ping."""

    async def ping(event: DispatchEvent, args: list[str]) -> None:
        await rest.create_message(event.payload["channel_id"], "pong")

    registry.register("ping", ping)
