"""Tests for the test session orchestrator."""

import asyncio
import queue
import threading
import time
from datetime import datetime
from typing import List, Optional, Sequence, Union

import pytest

from hw_tester.adapters import ReceiveError, ReceiveTimeout, SendError, UdpTransport
from hw_tester.codec import decode_command, encode_result
from hw_tester.core.models import OutcomeCode, Peripheral, ResultMessage
from hw_tester.orchestrator import (
    LOOKUP_FAILED_TEXT,
    IdAllocationError,
    PersistError,
    PreconditionError,
    SessionInProgressError,
    SessionOrchestrator,
    SessionStatus,
)
from hw_tester.store import StoreUnavailable, WriteConflict

START = datetime(2025, 1, 2, 3, 4, 5)
TEST_ID = 7

Reply = Union[bytes, Exception]


def reply(
    peripheral: int, outcome: int = OutcomeCode.SUCCESS, test_id: int = TEST_ID
) -> bytes:
    return encode_result(
        ResultMessage(
            test_id=test_id, peripheral_code=int(peripheral), outcome_code=int(outcome)
        )
    )


class FakeTransport:
    """Transport double feeding queued replies to listener threads.

    A listener asking for more replies than were queued blocks until
    ``feed`` is called, like a UUT that never answers.
    """

    def __init__(
        self,
        replies: Sequence[Reply] = (),
        *,
        rendezvous: Optional[int] = None,
        send_error: Optional[Exception] = None,
        receive_timeout: Optional[float] = None,
    ) -> None:
        self.sent: List[bytes] = []
        self.receive_timeout = receive_timeout
        self.timeouts: List[Optional[float]] = []
        self.receive_calls = 0
        self._send_error = send_error
        self._replies: "queue.Queue[Reply]" = queue.Queue()
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(rendezvous) if rendezvous else None
        for item in replies:
            self._replies.put(item)

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def feed(self, item: Reply) -> None:
        self._replies.put(item)

    def send_datagram(self, data: bytes) -> None:
        if self._send_error is not None:
            raise self._send_error
        self.sent.append(data)

    def receive_datagram(self, expected_length: int, timeout: Optional[float] = None):
        with self._lock:
            self.receive_calls += 1
            self.timeouts.append(timeout)
        if self._barrier is not None:
            # Every listener must be blocked here at the same time.
            self._barrier.wait(timeout=2.0)
        try:
            item = self._replies.get(timeout=timeout)
        except queue.Empty:
            raise ReceiveTimeout(f"No datagram within {timeout} seconds") from None
        if isinstance(item, Exception):
            raise item
        assert len(item) == expected_length
        return item, ("192.168.1.177", 54321)


class FakeStore:
    def __init__(
        self,
        next_id: int = TEST_ID,
        *,
        allocate_error: Optional[Exception] = None,
        record_error: Optional[Exception] = None,
        lookup_error: Optional[Exception] = None,
    ) -> None:
        self.next_id = next_id
        self.allocate_error = allocate_error
        self.record_error = record_error
        self.lookup_error = lookup_error
        self.allocate_calls = 0
        self.records: list[tuple[int, str, float, bool]] = []

    def allocate_id(self) -> int:
        self.allocate_calls += 1
        if self.allocate_error is not None:
            raise self.allocate_error
        return self.next_id

    def record_run(self, test_id, timestamp, duration_seconds, success) -> None:
        if self.record_error is not None:
            raise self.record_error
        self.records.append((test_id, timestamp, duration_seconds, success))

    def lookup_run(self, test_id: int) -> str:
        if self.lookup_error is not None:
            raise self.lookup_error
        return f"record {test_id}"

    def export_all(self) -> str:
        return ""


class SteppingClock:
    def __init__(self, *values: float) -> None:
        self._values = list(values)

    def __call__(self) -> float:
        return self._values.pop(0) if len(self._values) > 1 else self._values[0]


def make_orchestrator(transport, store, **kwargs) -> SessionOrchestrator:
    return SessionOrchestrator(
        transport,
        store,
        clock=lambda: START,
        monotonic=SteppingClock(10.0, 12.5),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_single_uart_session_succeeds():
    transport = FakeTransport([reply(Peripheral.UART)])
    store = FakeStore()
    orchestrator = make_orchestrator(transport, store)

    report = await orchestrator.run(Peripheral.UART, 3, "Hello UART")

    assert report.status is SessionStatus.COMPLETED
    assert report.success is True
    assert report.summary == "record 7"
    assert store.records == [(TEST_ID, "2025-01-02 03:04:05", 2.5, True)]

    assert len(transport.sent) == 1
    command = decode_command(transport.sent[0])
    assert command.test_id == TEST_ID
    assert command.peripheral_mask == Peripheral.UART
    assert command.iteration_count == 3
    assert command.payload == b"Hello UART"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "mask",
    [
        Peripheral.UART,
        Peripheral.SPI,
        Peripheral.I2C,
        Peripheral.UART | Peripheral.SPI,
        Peripheral.UART | Peripheral.I2C,
        Peripheral.SPI | Peripheral.I2C,
        Peripheral.all(),
    ],
)
async def test_one_concurrent_listener_per_requested_peripheral(mask):
    requested = Peripheral.requested(mask)
    transport = FakeTransport(
        [reply(p) for p in reversed(requested)], rendezvous=len(requested)
    )
    store = FakeStore()

    report = await make_orchestrator(transport, store).run(mask, 1, b"x")

    assert transport.receive_calls == len(requested)
    assert [slot.peripheral for slot in report.slots] == requested
    assert report.success is True


@pytest.mark.asyncio
async def test_slots_follow_request_order_not_arrival_order():
    transport = FakeTransport(
        [
            reply(Peripheral.I2C),
            reply(Peripheral.UART, OutcomeCode.FAILURE),
            reply(Peripheral.SPI),
        ]
    )

    report = await make_orchestrator(transport, FakeStore()).run(
        Peripheral.all(), 1, b""
    )

    assert [(slot.peripheral, slot.succeeded) for slot in report.slots] == [
        (Peripheral.UART, False),
        (Peripheral.SPI, True),
        (Peripheral.I2C, True),
    ]
    assert report.slots[0].detail == "reported failure"
    assert report.success is False


@pytest.mark.asyncio
async def test_missing_reply_blocks_session_without_timeout():
    transport = FakeTransport([reply(Peripheral.UART), reply(Peripheral.I2C)])
    store = FakeStore()
    orchestrator = make_orchestrator(transport, store)

    try:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.run(Peripheral.all(), 1, b""), 0.3)

        assert transport.receive_calls == 3
        assert store.records == []
        assert orchestrator.active is False
    finally:
        transport.feed(ReceiveError("released"))


@pytest.mark.asyncio
async def test_non_canonical_outcome_counts_as_failure():
    transport = FakeTransport(
        [reply(Peripheral.UART), reply(Peripheral.I2C, outcome=0x00)]
    )
    store = FakeStore()

    report = await make_orchestrator(transport, store).run(
        Peripheral.UART | Peripheral.I2C, 1, b"payload"
    )

    assert report.status is SessionStatus.COMPLETED
    assert report.success is False
    assert report.slots[1].outcome_code == 0x00
    assert report.slots[1].detail == "unexpected outcome 0x00"
    assert store.records[0][3] is False


@pytest.mark.asyncio
async def test_id_allocation_failure_aborts_before_sending():
    transport = FakeTransport([reply(Peripheral.UART)])
    store = FakeStore(allocate_error=StoreUnavailable("Cannot open DB"))

    report = await make_orchestrator(transport, store).run(Peripheral.UART, 1, b"")

    assert report.aborted
    assert isinstance(report.error, IdAllocationError)
    assert transport.sent == []
    assert transport.receive_calls == 0
    assert store.records == []


@pytest.mark.asyncio
async def test_stale_test_id_is_discarded():
    transport = FakeTransport(
        [
            reply(Peripheral.UART, OutcomeCode.SUCCESS, test_id=TEST_ID - 1),
            reply(Peripheral.UART, OutcomeCode.FAILURE),
        ]
    )

    report = await make_orchestrator(transport, FakeStore()).run(
        Peripheral.UART, 1, b""
    )

    assert transport.receive_calls == 2
    assert report.success is False
    assert report.slots[0].outcome_code == OutcomeCode.FAILURE


@pytest.mark.asyncio
async def test_stale_test_id_accepted_when_verification_disabled():
    transport = FakeTransport(
        [
            reply(Peripheral.UART, OutcomeCode.SUCCESS, test_id=TEST_ID - 1),
            reply(Peripheral.UART, OutcomeCode.FAILURE),
        ]
    )

    report = await make_orchestrator(
        transport, FakeStore(), verify_test_id=False
    ).run(Peripheral.UART, 1, b"")

    assert transport.receive_calls == 1
    assert report.success is True


@pytest.mark.asyncio
async def test_reply_for_unrequested_peripheral_is_discarded():
    transport = FakeTransport([reply(Peripheral.SPI), reply(Peripheral.UART)])

    report = await make_orchestrator(transport, FakeStore()).run(
        Peripheral.UART, 1, b""
    )

    assert transport.receive_calls == 2
    assert report.success is True


@pytest.mark.asyncio
async def test_duplicate_reply_leaves_other_slot_empty():
    transport = FakeTransport(
        [reply(Peripheral.UART), reply(Peripheral.UART, OutcomeCode.FAILURE)]
    )

    report = await make_orchestrator(transport, FakeStore()).run(
        Peripheral.UART | Peripheral.SPI, 1, b""
    )

    spi = report.slots[1]
    assert spi.peripheral is Peripheral.SPI
    assert spi.succeeded is False
    assert spi.detail == "no reply"
    assert report.success is False


@pytest.mark.asyncio
async def test_receive_error_degrades_one_slot_and_session_completes():
    transport = FakeTransport(
        [ReceiveError("Expected 6 bytes, got 3"), reply(Peripheral.SPI)]
    )
    store = FakeStore()

    report = await make_orchestrator(transport, store).run(
        Peripheral.UART | Peripheral.SPI, 1, b""
    )

    assert report.status is SessionStatus.COMPLETED
    uart, spi = report.slots
    assert uart.succeeded is False
    assert uart.detail == "receive error: Expected 6 bytes, got 3"
    assert spi.succeeded is True
    assert store.records == [(TEST_ID, "2025-01-02 03:04:05", 2.5, False)]
    assert "UART: Failure (receive error: Expected 6 bytes, got 3)" in report.render()


@pytest.mark.asyncio
async def test_receive_timeout_is_reported_per_slot():
    transport = FakeTransport([ReceiveTimeout("No datagram within 0.1 seconds")])

    report = await make_orchestrator(transport, FakeStore()).run(
        Peripheral.I2C, 1, b""
    )

    assert report.slots[0].detail == "no reply before timeout"
    assert report.success is False


@pytest.mark.asyncio
async def test_send_failure_aborts_session():
    transport = FakeTransport(send_error=SendError("Incomplete send: 3 of 7 bytes"))
    store = FakeStore()

    report = await make_orchestrator(transport, store).run(Peripheral.UART, 1, b"")

    assert report.aborted
    assert isinstance(report.error, SendError)
    assert report.test_id == TEST_ID
    assert transport.receive_calls == 0
    assert store.records == []


@pytest.mark.asyncio
async def test_persist_failure_keeps_results():
    transport = FakeTransport([reply(Peripheral.UART)])
    store = FakeStore(record_error=WriteConflict("Test id 7 is already recorded"))

    report = await make_orchestrator(transport, store).run(Peripheral.UART, 1, b"")

    assert report.status is SessionStatus.PERSIST_FAILED
    assert isinstance(report.error, PersistError)
    assert report.success is True
    assert report.slots[0].succeeded is True
    assert "Test ID: 7" in report.summary
    assert "Result: Success" in report.summary


@pytest.mark.asyncio
async def test_lookup_failure_falls_back_to_generic_text():
    transport = FakeTransport([reply(Peripheral.UART)])
    store = FakeStore(lookup_error=StoreUnavailable("Cannot open DB"))

    report = await make_orchestrator(transport, store).run(Peripheral.UART, 1, b"")

    assert report.status is SessionStatus.COMPLETED
    assert report.summary == LOOKUP_FAILED_TEXT
    assert len(store.records) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("mask", [0, 0x01, 0x10])
async def test_invalid_mask_is_rejected_before_any_io(mask):
    transport = FakeTransport()
    store = FakeStore()

    with pytest.raises(PreconditionError):
        await make_orchestrator(transport, store).run(mask, 1, b"")

    assert store.allocate_calls == 0
    assert transport.sent == []


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected():
    store = FakeStore()

    with pytest.raises(PreconditionError):
        await make_orchestrator(FakeTransport(), store).run(
            Peripheral.UART, 1, "x" * 256
        )

    assert store.allocate_calls == 0


@pytest.mark.asyncio
async def test_concurrent_run_is_refused():
    transport = FakeTransport()
    orchestrator = make_orchestrator(transport, FakeStore())

    first = asyncio.create_task(orchestrator.run(Peripheral.UART, 1, b""))
    for _ in range(100):
        if transport.receive_calls:
            break
        await asyncio.sleep(0.01)

    with pytest.raises(SessionInProgressError):
        await orchestrator.run(Peripheral.SPI, 1, b"")

    transport.feed(reply(Peripheral.UART))
    report = await asyncio.wait_for(first, 2.0)

    assert report.success is True
    assert orchestrator.active is False


@pytest.mark.asyncio
async def test_stale_traffic_does_not_extend_receive_timeout():
    transport = FakeTransport(receive_timeout=0.3)
    stop = threading.Event()

    def chatter() -> None:
        while not stop.is_set():
            transport.feed(reply(Peripheral.UART, test_id=TEST_ID - 1))
            time.sleep(0.02)

    feeder = threading.Thread(target=chatter, daemon=True)
    feeder.start()
    started = time.monotonic()
    try:
        report = await asyncio.wait_for(
            make_orchestrator(transport, FakeStore()).run(Peripheral.UART, 1, b""),
            3.0,
        )
    finally:
        stop.set()
        feeder.join()

    assert time.monotonic() - started < 1.5
    assert report.slots[0].detail == "no reply before timeout"
    assert report.success is False
    assert transport.receive_calls > 1
    assert all(timeout is not None and timeout <= 0.3 for timeout in transport.timeouts)
    assert transport.timeouts[-1] < transport.timeouts[0]


@pytest.mark.asyncio
async def test_cancelled_session_blocks_next_run_until_listeners_finish():
    transport = FakeTransport()
    orchestrator = make_orchestrator(transport, FakeStore())

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(orchestrator.run(Peripheral.UART, 1, b""), 0.2)

    assert orchestrator.active is True
    with pytest.raises(SessionInProgressError):
        await orchestrator.run(Peripheral.UART, 1, b"")

    # The abandoned listener takes this reply and exits.
    transport.feed(reply(Peripheral.UART))
    for _ in range(200):
        if not orchestrator.active:
            break
        await asyncio.sleep(0.01)
    assert orchestrator.active is False

    transport.feed(reply(Peripheral.UART))
    report = await asyncio.wait_for(
        orchestrator.run(Peripheral.UART, 1, b""), 2.0
    )

    assert report.status is SessionStatus.COMPLETED
    assert report.success is True


@pytest.mark.asyncio
async def test_session_over_loopback_udp(fake_uut, result_store):
    fake_uut.outcomes[Peripheral.SPI] = OutcomeCode.FAILURE

    with UdpTransport("127.0.0.1", fake_uut.port, receive_timeout=5.0) as transport:
        orchestrator = SessionOrchestrator(transport, result_store)
        report = await orchestrator.run(Peripheral.all(), 2, "shared message")

    assert report.status is SessionStatus.COMPLETED
    assert [slot.succeeded for slot in report.slots] == [True, False, True]
    assert fake_uut.commands[0].payload == b"shared message"
    assert fake_uut.commands[0].iteration_count == 2
    assert report.summary.startswith("Test ID: 1\n")
    assert report.summary.endswith("Result: Failure")
    assert result_store.allocate_id() == 2
