"""In-memory page history of the presentation layer."""

from __future__ import annotations

import logging

from workshopsync._constants import ROOT_PAGE

_logger = logging.getLogger(__name__)


class NavigationHistory:
    """Stack of visited pages; the root page is never popped."""

    def __init__(self, root: str = ROOT_PAGE) -> None:
        self._root = root
        self._stack: list[str] = [root]

    def __len__(self) -> int:
        return len(self._stack)

    @property
    def root(self) -> str:
        return self._root

    @property
    def current(self) -> str:
        return self._stack[-1]

    @property
    def pages(self) -> list[str]:
        return list(self._stack)

    def push(self, page: str) -> None:
        if page != self.current:
            self._stack.append(page)

    def go_back(self) -> str:
        if len(self._stack) > 1:
            self._stack.pop()
        return self.current

    def reset_to_root(self) -> None:
        if len(self._stack) > 1:
            _logger.debug("Navigation collapsed to %s from %s", self._root, self.current)
        self._stack = [self._root]
