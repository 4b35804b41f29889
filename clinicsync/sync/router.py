"""
Event Router: demultiplexes named channel events to typed handlers.

Holds no state beyond the handler table. Exactly one handler per event name;
registering again replaces the previous one. Unknown events are ignored so the
server can add event types without breaking older clients.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from clinicsync.errors import MalformedEvent
from clinicsync.sync.payloads import parse

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class _Route:
    handler: Handler
    model: Optional[type[BaseModel]]


class EventRouter:
    def __init__(self) -> None:
        self._routes: dict[str, _Route] = {}

    def register(self, event_name: str, handler: Handler, model: Optional[type[BaseModel]] = None) -> None:
        """
        Associate *handler* with *event_name*.

        When *model* is given the raw payload is validated into it first and the
        handler receives the typed instance; otherwise it receives the raw payload.
        """
        if event_name in self._routes:
            logger.debug(f"Replacing handler for '{event_name}'")
        self._routes[event_name] = _Route(handler=handler, model=model)

    def unregister_all(self) -> None:
        """Detach every handler. Must run on teardown before the store goes away."""
        if self._routes:
            logger.debug(f"Detaching {len(self._routes)} event handlers")
        self._routes.clear()

    def registered(self) -> list[str]:
        return sorted(self._routes)

    async def dispatch(self, event_name: str, payload: Any) -> bool:
        """
        Deliver one inbound event. Returns True if a handler ran to completion.

        Malformed payloads and handler failures are logged and swallowed here:
        a bad server message must never take down the live state.
        """
        route = self._routes.get(event_name)
        if route is None:
            logger.debug(f"Ignoring unhandled event '{event_name}'")
            return False

        try:
            arg = parse(route.model, event_name, payload) if route.model is not None else payload
        except MalformedEvent as exc:
            logger.warning(str(exc))
            return False

        try:
            result = route.handler(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Handler for '%s' failed: %s: %s", event_name, type(exc).__name__, exc)
            return False
        return True
