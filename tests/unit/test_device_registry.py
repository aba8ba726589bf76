import threading

import pytest

from common.errors import ConflictError, ValidationError
from registry.devices import DeviceRegistry


def test_register_returns_device_with_timestamp():
    reg = DeviceRegistry()
    dev = reg.register("alice", "E-1")
    assert dev.username == "alice"
    assert dev.employee_id == "E-1"
    assert dev.created_at > 0
    assert dev.to_dict() == {"username": "alice", "employeeId": "E-1",
                             "createdAt": dev.created_at}


@pytest.mark.parametrize("username,employee_id", [
    ("", "E-1"),
    ("alice", ""),
    (None, "E-1"),
    ("alice", None),
    ("   ", "E-1"),
])
def test_missing_fields_are_rejected(username, employee_id):
    reg = DeviceRegistry()
    with pytest.raises(ValidationError):
        reg.register(username, employee_id)
    assert reg.list() == []


def test_non_string_fields_are_rejected():
    reg = DeviceRegistry()
    with pytest.raises(ValidationError):
        reg.register(["alice"], "E-1")


def test_numeric_employee_id_is_stored_as_text():
    reg = DeviceRegistry()
    assert reg.register("alice", 42).employee_id == "42"
    with pytest.raises(ConflictError):
        reg.register("bob", "42")


def test_same_employee_id_conflicts_with_any_username():
    reg = DeviceRegistry()
    first = reg.register("alice", "E-1")
    with pytest.raises(ConflictError) as err:
        reg.register("bob", "E-1")
    assert err.value.existing == first
    assert len(reg) == 1


def test_username_conflicts_case_insensitively():
    reg = DeviceRegistry()
    first = reg.register("Alice", "E-1")
    with pytest.raises(ConflictError) as err:
        reg.register("alice", "E-2")
    assert err.value.existing is first


def test_employee_id_match_is_exact():
    reg = DeviceRegistry()
    reg.register("alice", "e-1")
    reg.register("bob", "E-1")
    assert [d.username for d in reg.list()] == ["alice", "bob"]


def test_list_keeps_insertion_order():
    reg = DeviceRegistry()
    for i in range(5):
        reg.register(f"user{i}", f"E-{i}")
    assert [d.employee_id for d in reg.list()] == [f"E-{i}" for i in range(5)]


def test_find_matches_either_key():
    reg = DeviceRegistry()
    dev = reg.register("Alice", "E-1")
    assert reg.find("ALICE", "nope") is dev
    assert reg.find("nobody", "E-1") is dev
    assert reg.find("nobody", "nope") is None


def test_concurrent_registration_admits_exactly_one():
    reg = DeviceRegistry()
    workers = 16
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt(i):
        barrier.wait()
        try:
            reg.register(f"user{i}", "E-shared")
            outcome = "ok"
        except ConflictError:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("conflict") == workers - 1
    assert len(reg) == 1
