"""Test session orchestration.

One session allocates a test id, sends a single command datagram, then waits
for one result datagram per requested peripheral. Each peripheral gets its own
listener thread; the threads are joined with ``asyncio.gather`` before
any verdict is computed. Each listener only returns the message it accepted;
messages are placed into slots by peripheral code after the join, so slot
order is UART, SPI, I2C no matter how replies arrive.

Sessions are strictly one at a time per orchestrator instance.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from .adapters.udp import ReceiveError, ReceiveTimeout, TransportError
from .codec import MalformedMessage, decode_result, encode_command
from .constants import MAX_PAYLOAD_SIZE, RESULT_MESSAGE_SIZE
from .core.models import (
    CommandMessage,
    OutcomeCode,
    Peripheral,
    ResultMessage,
    SlotResult,
    TestRunRecord,
    compute_verdict,
)
from .core.protocols import ResultStore, Transport
from .store import StoreError, format_record

LOGGER = logging.getLogger(__name__)

LOOKUP_FAILED_TEXT = "Test record could not be retrieved"


class SessionError(RuntimeError):
    """Base class for failures reported by a test session."""


class PreconditionError(ValueError):
    """Raised when ``run()`` is called with arguments no session can use."""


class IdAllocationError(SessionError):
    """The result store could not hand out a test id."""


class PersistError(SessionError):
    """The finished run could not be written to the result store."""


class SessionInProgressError(SessionError):
    """Raised when ``run()`` is re-entered while a session is active."""


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    """Results were collected and persisted."""

    PERSIST_FAILED = "persist_failed"
    """Results were collected but the record may be lost."""

    ABORTED = "aborted"
    """The session stopped before any result could be collected."""


@dataclass(slots=True)
class SessionReport:
    """Outcome of one ``run()`` call."""

    status: SessionStatus
    test_id: Optional[int] = None
    slots: List[SlotResult] = field(default_factory=list)
    record: Optional[TestRunRecord] = None
    summary: str = ""
    error: Optional[Exception] = None

    @property
    def aborted(self) -> bool:
        return self.status is SessionStatus.ABORTED

    @property
    def success(self) -> bool:
        return self.record is not None and self.record.success

    def render(self) -> str:
        lines: List[str] = []
        if self.summary:
            lines.append(self.summary)
        lines.extend(slot.describe() for slot in self.slots)
        if self.error is not None:
            lines.append(f"Error: {self.error}")
        return "\n".join(lines)


@dataclass(slots=True)
class _ListenerResult:
    message: Optional[ResultMessage] = None
    error: Optional[str] = None


class SessionOrchestrator:
    """Runs test sessions against one UUT over a shared transport.

    Args:
        transport: An opened transport to the UUT.
        store: Result store used to allocate ids and persist runs.
        verify_test_id: Discard replies whose test id differs from the
            session's id. When false they are accepted with a warning.
        clock: Wall clock used for the recorded start time.
        monotonic: Clock used to measure session duration.
    """

    def __init__(
        self,
        transport: Transport,
        store: ResultStore,
        *,
        verify_test_id: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._verify_test_id = verify_test_id
        self._clock = clock or datetime.now
        self._monotonic = monotonic or time.monotonic
        self._active = False
        self._receiving = 0
        self._receiving_lock = threading.Lock()

    @property
    def active(self) -> bool:
        """True while a session runs or any of its listeners is still receiving."""
        return self._active or self.receiving_listeners > 0

    @property
    def receiving_listeners(self) -> int:
        with self._receiving_lock:
            return self._receiving

    async def run(
        self,
        peripheral_mask: int,
        iteration_count: int,
        payload: Union[bytes, str],
    ) -> SessionReport:
        """Run one session to completion.

        Raises:
            PreconditionError: The mask is empty or the arguments are out of range.
            SessionInProgressError: Another session is running on this instance.
        """

        peripherals = Peripheral.requested(peripheral_mask)
        if not peripherals or peripheral_mask & ~int(Peripheral.all()):
            raise PreconditionError(
                f"Peripheral mask 0x{peripheral_mask:02X} selects no known peripheral"
            )
        if not 0 <= iteration_count <= 0xFF:
            raise PreconditionError(
                f"Iteration count must be in range 0-255, got {iteration_count}"
            )
        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        if len(data) > MAX_PAYLOAD_SIZE:
            raise PreconditionError(
                f"Payload is {len(data)} bytes; limit is {MAX_PAYLOAD_SIZE}"
            )

        if self._active:
            raise SessionInProgressError("A test session is already running")
        leftover = self.receiving_listeners
        if leftover:
            # A cancelled session still has listeners reading the shared transport.
            raise SessionInProgressError(
                f"{leftover} listener(s) of an abandoned session are still receiving"
            )

        self._active = True
        try:
            return await self._run_session(
                peripheral_mask, peripherals, iteration_count, data
            )
        finally:
            self._active = False

    async def _run_session(
        self,
        peripheral_mask: int,
        peripherals: List[Peripheral],
        iteration_count: int,
        payload: bytes,
    ) -> SessionReport:
        try:
            test_id = await asyncio.to_thread(self._store.allocate_id)
        except StoreError as exc:
            LOGGER.error("Loading test id from the result store failed: %s", exc)
            return SessionReport(
                status=SessionStatus.ABORTED,
                error=IdAllocationError(f"Could not allocate a test id: {exc}"),
            )

        command = CommandMessage.build(
            test_id, peripheral_mask, iteration_count, payload
        )
        try:
            self._transport.send_datagram(encode_command(command))
        except TransportError as exc:
            LOGGER.error("Sending test %d command failed: %s", test_id, exc)
            return SessionReport(
                status=SessionStatus.ABORTED, test_id=test_id, error=exc
            )

        started_at = self._clock()
        start = self._monotonic()
        LOGGER.info(
            "Test %d started: %s, %d iteration(s), %d payload byte(s)",
            test_id,
            "|".join(p.label for p in peripherals),
            iteration_count,
            len(payload),
        )

        expected = frozenset(int(p) for p in peripherals)
        results = await asyncio.gather(
            *(
                self._spawn_listener(test_id, index, expected)
                for index in range(len(peripherals))
            )
        )

        duration = self._monotonic() - start
        slots = _assign_slots(peripherals, results)
        record = TestRunRecord(
            test_id=test_id,
            started_at=started_at,
            duration_seconds=duration,
            success=compute_verdict(slots),
        )

        try:
            await asyncio.to_thread(
                self._store.record_run,
                test_id,
                record.timestamp,
                record.duration_seconds,
                record.success,
            )
        except StoreError as exc:
            LOGGER.error("Recording test %d failed: %s", test_id, exc)
            return SessionReport(
                status=SessionStatus.PERSIST_FAILED,
                test_id=test_id,
                slots=slots,
                record=record,
                summary=format_record(record),
                error=PersistError(f"Test {test_id} may not have been recorded: {exc}"),
            )

        try:
            summary = await asyncio.to_thread(self._store.lookup_run, test_id)
        except StoreError as exc:
            LOGGER.warning("Reading back test %d failed: %s", test_id, exc)
            summary = LOOKUP_FAILED_TEXT

        return SessionReport(
            status=SessionStatus.COMPLETED,
            test_id=test_id,
            slots=slots,
            record=record,
            summary=summary,
        )

    def _spawn_listener(
        self, test_id: int, index: int, expected: FrozenSet[int]
    ) -> "asyncio.Future[_ListenerResult]":
        """Start one listener thread and return a future for its result.

        Listener threads are daemons: a UUT that never answers must not keep
        the process alive once the session has been abandoned.
        """

        loop = asyncio.get_running_loop()
        future: asyncio.Future[_ListenerResult] = loop.create_future()

        def _deliver(result: _ListenerResult, error: Optional[Exception]) -> None:
            if future.done():
                if result.message is not None:
                    LOGGER.warning(
                        "Listener %d for test %d received a reply after its session ended",
                        index,
                        test_id,
                    )
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def _target() -> None:
            result = _ListenerResult()
            error: Optional[Exception] = None
            try:
                result = self._listen(test_id, index, expected)
            except Exception as exc:
                error = exc
            finally:
                with self._receiving_lock:
                    self._receiving -= 1
            try:
                loop.call_soon_threadsafe(_deliver, result, error)
            except RuntimeError:
                # Event loop already closed; the session was abandoned.
                LOGGER.debug("Listener %d for test %d outlived its session", index, test_id)

        thread = threading.Thread(
            target=_target, name=f"uut-listener-{test_id}-{index}", daemon=True
        )
        with self._receiving_lock:
            self._receiving += 1
        thread.start()
        return future

    def _listen(
        self, test_id: int, index: int, expected: FrozenSet[int]
    ) -> _ListenerResult:
        """Receive until one usable reply arrives; runs in a worker thread.

        With a receive timeout configured the whole wait is bounded by one
        deadline, so discarded datagrams do not extend it.
        """

        timeout = self._transport.receive_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            remaining: Optional[float] = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    LOGGER.warning(
                        "Listener %d for test %d: no usable reply within %s seconds",
                        index,
                        test_id,
                        timeout,
                    )
                    return _ListenerResult(error="no reply before timeout")
            try:
                data, peer = self._transport.receive_datagram(
                    RESULT_MESSAGE_SIZE, timeout=remaining
                )
                message = decode_result(data)
            except ReceiveTimeout as exc:
                LOGGER.warning("Listener %d for test %d: %s", index, test_id, exc)
                return _ListenerResult(error="no reply before timeout")
            except (ReceiveError, MalformedMessage) as exc:
                LOGGER.warning("Listener %d for test %d: %s", index, test_id, exc)
                return _ListenerResult(error=f"receive error: {exc}")

            LOGGER.info(
                "Test #%d | peripheral %d | result %d",
                message.test_id,
                message.peripheral_code,
                message.outcome_code,
            )

            if message.peripheral_code not in expected:
                LOGGER.warning(
                    "Discarding reply from %s for unrequested peripheral 0x%02X",
                    peer,
                    message.peripheral_code,
                )
                continue

            if message.test_id != test_id:
                if self._verify_test_id:
                    LOGGER.warning(
                        "Discarding reply from %s for test %d during test %d",
                        peer,
                        message.test_id,
                        test_id,
                    )
                    continue
                LOGGER.warning(
                    "Accepting reply for test %d during test %d",
                    message.test_id,
                    test_id,
                )

            return _ListenerResult(message=message)


def _assign_slots(
    peripherals: List[Peripheral], results: List[_ListenerResult]
) -> List[SlotResult]:
    accepted: Dict[int, ResultMessage] = {}
    errors: List[str] = []

    for result in results:
        if result.message is None:
            errors.append(result.error or "no reply")
            continue
        code = result.message.peripheral_code
        if code in accepted:
            LOGGER.warning("Ignoring duplicate reply for peripheral 0x%02X", code)
            continue
        accepted[code] = result.message

    slots: List[SlotResult] = []
    for peripheral in peripherals:
        message = accepted.get(int(peripheral))
        if message is None:
            detail = errors.pop(0) if errors else "no reply"
            slots.append(SlotResult(peripheral=peripheral, succeeded=False, detail=detail))
            continue

        detail = None
        if not message.succeeded:
            if message.outcome_code == OutcomeCode.FAILURE:
                detail = "reported failure"
            else:
                detail = f"unexpected outcome 0x{message.outcome_code:02X}"
        slots.append(
            SlotResult(
                peripheral=peripheral,
                succeeded=message.succeeded,
                outcome_code=message.outcome_code,
                detail=detail,
            )
        )
    return slots
