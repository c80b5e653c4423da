"""Round over a list of RPC clients until one of them succeeds."""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

C = TypeVar("C")
V = TypeVar("V")


class NoMoreClientsError(Exception):
    """Raised when every client has been handed out."""

    def __init__(self, message: str = "no more clients") -> None:
        super().__init__(message)


class AllClientsFailedError(Exception):
    """Raised when no client could serve a call; holds every failure."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = tuple(errors)
        details = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{len(self.errors)} errors occurred: {details}")


class Clients(Generic[C]):
    """An ordered set of clients handed out one after another."""

    def __init__(self) -> None:
        self._clients: list[C] = []
        self._next = 0

    def add(self, client: C) -> None:
        self._clients.append(client)

    def next(self) -> C:
        if self._next >= len(self._clients):
            raise NoMoreClientsError()
        client = self._clients[self._next]
        self._next += 1
        return client

    def __len__(self) -> int:
        return len(self._clients)

    def _rewind(self) -> None:
        self._next = 0


def with_clients(clients: Clients[C], func: Callable[[C], V]) -> V:
    """Call ``func`` with each client in turn and return the first success."""
    clients._rewind()
    errors: list[Exception] = []
    while True:
        try:
            client = clients.next()
        except NoMoreClientsError as err:
            errors.append(err)
            raise AllClientsFailedError(errors) from None
        try:
            return func(client)
        except Exception as err:  # any failure moves on to the next client
            errors.append(err)