import pytest

from firecore.rpc import AllClientsFailedError, Clients, NoMoreClientsError, with_clients


def _clients(*items):
    clients = Clients()
    for item in items:
        clients.add(item)
    return clients


def test_next_hands_out_in_order_then_stops():
    clients = _clients("a", "b")
    assert clients.next() == "a"
    assert clients.next() == "b"
    with pytest.raises(NoMoreClientsError):
        clients.next()


def test_empty_clients():
    with pytest.raises(NoMoreClientsError):
        Clients().next()


def test_with_clients_returns_first_success():
    def call(client):
        if client == "bad":
            raise ConnectionError("down")
        return client.upper()

    assert with_clients(_clients("bad", "good", "other"), call) == "GOOD"


def test_with_clients_collects_all_errors():
    def call(client):
        raise ConnectionError(client)

    with pytest.raises(AllClientsFailedError) as info:
        with_clients(_clients("x", "y"), call)

    errors = info.value.errors
    assert [str(err) for err in errors[:2]] == ["x", "y"]
    assert isinstance(errors[-1], NoMoreClientsError)
    assert len(errors) == 3


def test_with_clients_rewinds_each_call():
    clients = _clients("only")
    assert with_clients(clients, lambda c: c) == "only"
    assert with_clients(clients, lambda c: c + "!") == "only!"