import logging
import sys
import tempfile
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import patch

import pendulum
import pytest
from loguru import logger

import iotstore.core.coreabc as coreabc
import iotstore.core.logging as iotlogging
from iotstore.config.config import ConfigIoT, get_config
from iotstore.core.database import Database, get_database
from iotstore.core.records import Sample
from iotstore.utils.datetimeutil import DateTime, to_datetime


@pytest.fixture(autouse=True)
def disable_debug_logging():
    """Automatically disable debug logging of the standard library loggers for all tests."""
    original_levels = {}
    root_logger = logging.getLogger()

    original_levels[root_logger] = root_logger.level
    root_logger.setLevel(logging.INFO)

    yield

    for std_logger, level in original_levels.items():
        std_logger.setLevel(level)


@pytest.fixture
def restore_logging():
    """Restore loguru and standard logging handlers after a test reconfigured them."""
    root_logger = logging.getLogger()
    root_handlers = list(root_logger.handlers)
    root_level = root_logger.level

    yield

    logger.complete()
    logger.remove()
    logger.add(sys.stderr)
    iotlogging.console_handler_id = None
    iotlogging.file_handler_id = None
    root_logger.handlers = root_handlers
    root_logger.setLevel(root_level)


def pytest_addoption(parser):
    parser.addoption(
        "--check-config-side-effect",
        action="store_true",
        default=False,
        help="Verify that user config file is non-existent (will also fail if user config file "
        "exists before test run).",
    )


@pytest.fixture
def config_default_dirs():
    """Fixture that provides a list of directories to be used as config dir."""
    with tempfile.TemporaryDirectory() as tmp_user_home_dir:
        # Default config directory from platform user config directory
        config_default_dir_user = Path(tmp_user_home_dir) / "config"

        # Default config directory from current working directory
        config_default_dir_cwd = Path(tmp_user_home_dir) / "cwd"
        config_default_dir_cwd.mkdir()

        # Default config directory from default config file
        config_default_dir_default = Path(__file__).parent.parent.joinpath("src/iotstore/data")

        # Default data directory from platform user data directory
        data_default_dir_user = Path(tmp_user_home_dir)
        yield (
            config_default_dir_user,
            config_default_dir_cwd,
            config_default_dir_default,
            data_default_dir_user,
        )


@pytest.fixture(autouse=True)
def user_cwd(config_default_dirs):
    with patch(
        "pathlib.Path.cwd",
        return_value=config_default_dirs[1],
    ) as user_cwd_patch:
        yield user_cwd_patch


@pytest.fixture(autouse=True)
def user_config_dir(config_default_dirs):
    with patch(
        "iotstore.config.config.user_config_dir",
        return_value=str(config_default_dirs[0]),
    ) as user_dir_patch:
        yield user_dir_patch


@pytest.fixture(autouse=True)
def user_data_dir(config_default_dirs):
    with patch(
        "iotstore.config.config.user_data_dir",
        return_value=str(config_default_dirs[-1] / "data"),
    ) as user_dir_patch:
        yield user_dir_patch


# Test if test has side effect of writing to system (user) config file
@pytest.fixture(autouse=True)
def cfg_non_existent(request):
    yield
    if bool(request.config.getoption("--check-config-side-effect")):
        from platformdirs import user_config_dir

        user_dir = user_config_dir(ConfigIoT.APP_NAME, ConfigIoT.APP_AUTHOR)
        assert not Path(user_dir).joinpath(ConfigIoT.CONFIG_FILE_NAME).exists()


@pytest.fixture(autouse=True)
def config_iot(
    disable_debug_logging,
    user_config_dir,
    user_data_dir,
    user_cwd,
    config_default_dirs,
    monkeypatch,
) -> ConfigIoT:
    """Fixture to reset the store config to default values."""
    for env_name in (ConfigIoT.IOTSTORE_DIR, ConfigIoT.IOTSTORE_CONFIG_DIR):
        monkeypatch.delenv(env_name, raising=False)
    # No pause in between cleanup batches
    monkeypatch.setenv("IOTSTORE_RETENTION__BATCH_PAUSE_SEC", "0")

    config_file = config_default_dirs[0] / ConfigIoT.CONFIG_FILE_NAME
    assert not config_file.exists()

    ConfigIoT.reset_instance()
    monkeypatch.setattr(coreabc, "config_iot", None)
    config = get_config()
    config.reset_settings()
    monkeypatch.setattr(coreabc, "config_iot", config)

    assert config_file == config.general.config_file_path
    assert config_file.exists()
    assert config_default_dirs[-1] / "data" == config.general.data_folder_path
    return config


@pytest.fixture(autouse=True)
def database_iot(config_iot, monkeypatch) -> Database:
    """Fixture to provide a freshly opened database per test."""
    Database.reset_instance()
    database = get_database()
    database.open()
    monkeypatch.setattr(coreabc, "database_iot", database)

    yield database

    Database.reset_instance()


@pytest.fixture
def base_time() -> DateTime:
    """Fixed reference time at the top of an hour."""
    return to_datetime("2024-01-01T10:00:00Z")


@pytest.fixture
def insert_sample(database_iot) -> Callable[..., Sample]:
    """Insert a raw sample, `created_at` given as date input."""

    def _insert(
        created_at,
        value: float = 1.0,
        device_id: str = "dev-1",
        datastream_id: str = "temperature",
        payload: Optional[dict] = None,
    ) -> Sample:
        return database_iot.insert_sample(
            device_id, datastream_id, value, payload, to_datetime(created_at)
        )

    return _insert


@pytest.fixture
def set_other_timezone():
    """Temporarily sets a timezone for Pendulum during a test.

    Resets to the original timezone after the test completes.
    """
    original_timezone = pendulum.local_timezone()

    default_other_timezone = "Atlantic/Canary"
    if default_other_timezone == original_timezone:
        default_other_timezone = "Asia/Singapore"

    def _set_timezone(other_timezone: Optional[str] = None) -> str:
        if other_timezone is None:
            other_timezone = default_other_timezone
        pendulum.set_local_timezone(other_timezone)
        assert pendulum.local_timezone() == other_timezone
        return other_timezone

    yield _set_timezone

    # Restore the original timezone
    pendulum.set_local_timezone(original_timezone)
    assert pendulum.local_timezone() == original_timezone
