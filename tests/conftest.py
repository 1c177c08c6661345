import socket
import threading
from typing import Dict, List

import pytest

from hw_tester.codec import decode_command, encode_result
from hw_tester.core.models import CommandMessage, OutcomeCode, Peripheral, ResultMessage
from hw_tester.store import SqliteResultStore


class FakeUut:
    """Loopback stand-in for the unit under test.

    Answers one command with a result datagram per requested peripheral,
    in reverse slot order.
    """

    def __init__(self) -> None:
        self.outcomes: Dict[Peripheral, int] = {}
        self.commands: List[CommandMessage] = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.settimeout(5.0)
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        self._thread.join(timeout=5.0)
        self._sock.close()

    def _serve(self) -> None:
        try:
            data, peer = self._sock.recvfrom(1024)
        except OSError:
            return
        command = decode_command(data)
        self.commands.append(command)
        for peripheral in reversed(command.peripherals):
            outcome = self.outcomes.get(peripheral, OutcomeCode.SUCCESS)
            reply = ResultMessage(
                test_id=command.test_id,
                peripheral_code=int(peripheral),
                outcome_code=int(outcome),
            )
            self._sock.sendto(encode_result(reply), peer)


@pytest.fixture
def fake_uut():
    uut = FakeUut()
    uut.start()
    yield uut
    uut.close()


@pytest.fixture
def result_store(tmp_path) -> SqliteResultStore:
    store = SqliteResultStore(tmp_path / "records.db")
    store.prep()
    return store
