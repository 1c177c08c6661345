"""Configuration loader for hw-tester."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class UutConfig:
    host: str = constants.DEFAULT_UUT_HOST
    port: int = constants.DEFAULT_UUT_PORT
    local_port: int = 0  # 0 lets the OS pick an ephemeral port
    receive_timeout_seconds: Optional[float] = None  # None blocks until the UUT replies
    verify_test_id: bool = True


@dataclass(slots=True)
class StoreConfig:
    path: Path = constants.DEFAULT_DB_PATH


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    access_log: bool = False


@dataclass(slots=True)
class ServerConfig:
    host: str = constants.DEFAULT_SERVER_HOST
    port: int = constants.DEFAULT_SERVER_PORT


@dataclass(slots=True)
class TesterConfig:
    uut: UutConfig
    store: StoreConfig
    logging: LoggingConfig
    server: ServerConfig
    raw: ConfigParser
    path: Path


def _parse_optional_seconds(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    seconds = float(value)
    if seconds <= 0:
        return None
    return seconds


def _parse_optional_path(value: Optional[str]) -> Optional[Path]:
    if value is None or not value.strip():
        return None
    return Path(value).expanduser()


def load_config(path: Optional[Path] = None) -> TesterConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "uut": {
                "host": constants.DEFAULT_UUT_HOST,
                "port": str(constants.DEFAULT_UUT_PORT),
                "local_port": "0",
                "receive_timeout_seconds": "",
                "verify_test_id": "true",
            },
            "store": {
                "path": str(constants.DEFAULT_DB_PATH),
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "access_log": "false",
            },
            "server": {
                "host": constants.DEFAULT_SERVER_HOST,
                "port": str(constants.DEFAULT_SERVER_PORT),
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    try:
        receive_timeout = _parse_optional_seconds(
            parser.get("uut", "receive_timeout_seconds", fallback="")
        )
    except ValueError:
        receive_timeout = None

    uut = UutConfig(
        host=parser.get("uut", "host"),
        port=parser.getint("uut", "port", fallback=constants.DEFAULT_UUT_PORT),
        local_port=max(0, parser.getint("uut", "local_port", fallback=0)),
        receive_timeout_seconds=receive_timeout,
        verify_test_id=parser.getboolean("uut", "verify_test_id", fallback=True),
    )

    store = StoreConfig(
        path=Path(
            parser.get("store", "path", fallback=str(constants.DEFAULT_DB_PATH))
        ).expanduser(),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_parse_optional_path(parser.get("logging", "path", fallback="")),
        access_log=parser.getboolean("logging", "access_log", fallback=False),
    )

    server = ServerConfig(
        host=parser.get("server", "host", fallback=constants.DEFAULT_SERVER_HOST),
        port=parser.getint(
            "server", "port", fallback=constants.DEFAULT_SERVER_PORT
        ),
    )

    return TesterConfig(
        uut=uut,
        store=store,
        logging=logging_config,
        server=server,
        raw=parser,
        path=config_path,
    )
