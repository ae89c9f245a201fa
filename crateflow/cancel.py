# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import threading

from .errors import AnalysisCancelled


class CancellationToken:
    """A flag checked by long loops between iterations.

    The token may be cancelled from any thread; loops call
    raise_if_cancelled() at their boundaries.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, message: str = "Operation canceled.") -> None:
        if self._event.is_set():
            raise AnalysisCancelled(message)


def check(token, message: str) -> None:
    if token is not None:
        token.raise_if_cancelled(message)
