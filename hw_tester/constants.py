"""Constants used across the hw-tester package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "hw-tester"
DEFAULT_DATA_DIR = Path.home() / "HW_tester"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / DEFAULT_CONFIG_FILENAME
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "records.db"

DEFAULT_UUT_HOST = "192.168.1.177"
DEFAULT_UUT_PORT = 54321

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8765

# Wire format
COMMAND_HEADER_SIZE = 7
MAX_PAYLOAD_SIZE = 255
MAX_COMMAND_SIZE = COMMAND_HEADER_SIZE + MAX_PAYLOAD_SIZE
RESULT_MESSAGE_SIZE = 6
MAX_TEST_ID = 0xFFFFFFFF

DEFAULT_ITERATIONS = 1
DEFAULT_UART_MESSAGE = "Hello UART"
DEFAULT_SPI_MESSAGE = "Hello SPI"
DEFAULT_I2C_MESSAGE = "Hello I2C"
