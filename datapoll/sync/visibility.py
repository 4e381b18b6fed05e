"""Page visibility source for pausing pollers while nobody is looking."""

import contextlib
import logging
from typing import Callable

logger = logging.getLogger(__name__)

VisibilityHandler = Callable[[bool], None]


class PageVisibility:
    """Tracks whether the page is visible and notifies subscribers on change."""

    def __init__(self, visible: bool = True):
        self._visible = visible
        self._handlers: list[VisibilityHandler] = []

    @property
    def visible(self) -> bool:
        return self._visible

    def subscribe(self, handler: VisibilityHandler) -> Callable[[], None]:
        """Register a handler called with the new visibility.

        Returns:
            A function that removes the handler.
        """
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def set_visible(self, visible: bool) -> None:
        """Update visibility, notifying handlers when it changes."""
        if visible == self._visible:
            return

        self._visible = visible
        logger.debug("visible" if visible else "hidden")
        for handler in list(self._handlers):
            handler(visible)
