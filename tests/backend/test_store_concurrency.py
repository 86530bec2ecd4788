from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from backend.app.filters import QueryBuilder
from backend.app.models import SenderType
from backend.app.store import InMemoryStore, StoreConflictError

from conftest import BASE


def test_message_write_and_query_concurrent() -> None:
    store = InMemoryStore()
    case = store.create_case(customer_id="cust_1", created_at=BASE)
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        store.record_message(
            case_id=case.id,
            sender_type=SenderType.USER if index % 2 else SenderType.CUSTOMER,
            agent_id="3" if index % 2 else None,
            timestamp=BASE + timedelta(seconds=index),
            text=f"message {index}",
        )

    def reader() -> None:
        for _ in range(300):
            try:
                store.query_messages(QueryBuilder().sender(SenderType.USER).build())
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    messages = store.query_messages()
    assert len(messages) == 300
    assert [item.timestamp for item in messages] == sorted(item.timestamp for item in messages)


def test_episode_sequence_is_unique_per_case() -> None:
    store = InMemoryStore()
    case = store.create_case(customer_id="cust_1", created_at=BASE)
    data = {"case_id": case.id, "sequence": 1, "started_at": BASE}

    store.create_episode(data)
    with pytest.raises(StoreConflictError):
        store.create_episode(data)


def test_case_update_compare_and_swap() -> None:
    store = InMemoryStore()
    case = store.create_case(customer_id="cust_1", created_at=BASE)

    store.update_case(case.id, {"current_episode_id": "ep_1"}, expected={"current_episode_id": None})
    with pytest.raises(StoreConflictError):
        store.update_case(
            case.id, {"current_episode_id": "ep_2"}, expected={"current_episode_id": None}
        )
    assert store.find_case(case.id).current_episode_id == "ep_1"


def test_claim_event_is_first_writer_wins() -> None:
    store = InMemoryStore()

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda _: store.claim_event("evt_race"), range(32)))

    assert results.count(True) == 1
