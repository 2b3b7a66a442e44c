"""This module provides functionality to manage and handle configuration for the telemetry store.

The module includes loading, merging, and validating JSON configuration files.
It also provides utility functions for data folder setup.

Key features:
- Loading and merging configurations from default or custom JSON files
- Validating configurations using Pydantic models
- Managing directory setups for the application
"""

import os
import shutil
from pathlib import Path
from typing import Any, ClassVar, Optional, Type

from loguru import logger
from platformdirs import user_config_dir, user_data_dir
from pydantic import Field, computed_field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# settings
from iotstore.config.configabc import SettingsBaseModel
from iotstore.core.cachesettings import CacheCommonSettings
from iotstore.core.compactsettings import CompactionCommonSettings
from iotstore.core.coreabc import SingletonMixin
from iotstore.core.databasesettings import DatabaseCommonSettings
from iotstore.core.decorators import classproperty
from iotstore.core.logsettings import LoggingCommonSettings
from iotstore.core.pydantic import merge_models
from iotstore.core.retentionsettings import RetentionCommonSettings


def get_absolute_path(
    basepath: Optional[Path | str], subpath: Optional[Path | str]
) -> Optional[Path]:
    """Get path based on base path."""
    if isinstance(basepath, str):
        basepath = Path(basepath)
    if subpath is None:
        return basepath

    if isinstance(subpath, str):
        subpath = Path(subpath)
    if subpath.is_absolute():
        return subpath
    if basepath is not None:
        return basepath.joinpath(subpath)
    return None


class GeneralSettings(SettingsBaseModel):
    """Settings for common configuration.

    Attributes:
        data_folder_path (Optional[Path]): Directory of the telemetry database and log files.

    Properties:
        config_folder_path (Optional[Path]): Directory of the configuration file in use.
        config_file_path (Optional[Path]): Configuration file in use.
    """

    _config_folder_path: ClassVar[Optional[Path]] = None
    _config_file_path: ClassVar[Optional[Path]] = None

    data_folder_path: Optional[Path] = Field(
        default=None,
        description="Path to the telemetry store data directory.",
        examples=[None, "/var/lib/iotstore"],
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def config_folder_path(self) -> Optional[Path]:
        """Path to the configuration directory."""
        return self._config_folder_path

    @computed_field  # type: ignore[prop-decorator]
    @property
    def config_file_path(self) -> Optional[Path]:
        """Path to the configuration file."""
        return self._config_file_path


class SettingsIoT(BaseSettings):
    """Settings for the telemetry store.

    Used by updating the configuration with specific settings only.
    """

    general: Optional[GeneralSettings] = Field(
        default=None,
        description="General Settings",
    )
    logging: Optional[LoggingCommonSettings] = Field(
        default=None,
        description="Logging Settings",
    )
    database: Optional[DatabaseCommonSettings] = Field(
        default=None,
        description="Database Settings",
    )
    compaction: Optional[CompactionCommonSettings] = Field(
        default=None,
        description="Compaction Settings",
    )
    retention: Optional[RetentionCommonSettings] = Field(
        default=None,
        description="Retention Settings",
    )
    cache: Optional[CacheCommonSettings] = Field(
        default=None,
        description="Query Result Cache Settings",
    )

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_prefix="IOTSTORE_",
        extra="ignore",
        ignored_types=(classproperty,),
    )


class SettingsIoTDefaults(SettingsIoT):
    """Settings for the telemetry store with defaults.

    Used by ConfigIoT instance to make all fields available.
    """

    general: GeneralSettings = GeneralSettings()
    logging: LoggingCommonSettings = LoggingCommonSettings()
    database: DatabaseCommonSettings = DatabaseCommonSettings()
    compaction: CompactionCommonSettings = CompactionCommonSettings()
    retention: RetentionCommonSettings = RetentionCommonSettings()
    cache: CacheCommonSettings = CacheCommonSettings()


class ConfigIoT(SingletonMixin, SettingsIoTDefaults):
    """Singleton configuration handler for the telemetry store.

    Upon instantiation, the singleton instance attempts to load a configuration file in this order:
        1. The directory specified by the `IOTSTORE_CONFIG_DIR` environment variable
           (relative to `IOTSTORE_DIR` if given).
        2. A platform specific default directory.
        3. The current working directory.

    If no configuration file is found, the packaged default configuration is copied to the first
    directory of the list. Environment variables prefixed with `IOTSTORE_` (nested with `__`)
    take precedence over the configuration file.

    Example:
        ```python
        config = ConfigIoT()  # Always returns the same instance
        print(config.compaction.interval_sec)
        ```
    """

    APP_NAME: ClassVar[str] = "iotstore"
    APP_AUTHOR: ClassVar[str] = "iotstore"
    IOTSTORE_DIR: ClassVar[str] = "IOTSTORE_DIR"
    IOTSTORE_CONFIG_DIR: ClassVar[str] = "IOTSTORE_CONFIG_DIR"
    ENCODING: ClassVar[str] = "UTF-8"
    CONFIG_FILE_NAME: ClassVar[str] = "iotstore.config.json"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customizes the order and handling of settings sources.

        Order of precedence: init settings, environment variables, dotenv file, JSON
        configuration file, packaged default configuration file.

        Returns:
            tuple[PydanticBaseSettingsSource, ...]: Settings sources in the order they are applied.
        """
        setting_sources = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        config_file, exists = cls._get_config_file_path()
        config_dir = config_file.parent
        if not exists:
            try:
                config_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(cls.config_default_file_path, config_file)
            except OSError as exc:
                logger.warning(f"Could not copy default config: {exc}. Using default config...")
                config_file = cls.config_default_file_path
                config_dir = config_file.parent
        setting_sources.append(JsonConfigSettingsSource(settings_cls, json_file=config_file))
        default_settings = JsonConfigSettingsSource(
            settings_cls, json_file=cls.config_default_file_path
        )
        GeneralSettings._config_folder_path = config_dir
        GeneralSettings._config_file_path = config_file

        setting_sources.append(default_settings)
        return tuple(setting_sources)

    @classproperty
    def config_default_file_path(cls) -> Path:
        """Compute the default config file path."""
        return cls.package_root_path.joinpath("data/default.config.json")

    @classproperty
    def package_root_path(cls) -> Path:
        """Compute the package root path."""
        return Path(__file__).parent.parent.resolve()

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initializes the singleton ConfigIoT instance.

        Configuration data is loaded from a configuration file or a default one is created if none
        exists.
        """
        if hasattr(self, "_initialized"):
            return
        self._setup(*args, **kwargs)

    def _setup(self, *args: Any, **kwargs: Any) -> None:
        """Re-initialize global settings."""
        # Assure settings base knows the configuration
        SettingsBaseModel.config = self
        # (Re-)load settings
        SettingsIoTDefaults.__init__(self, *args, **kwargs)
        self._update_data_folder_path()
        # Model validation replaces the instance dict, mark as initialized afterwards
        self._initialized = True

    def merge_settings(self, settings: SettingsIoT) -> None:
        """Merges the provided settings into the global settings.

        Args:
            settings (SettingsIoT): The settings to apply globally.

        Raises:
            ValueError: If the `settings` is not a `SettingsIoT` instance.
        """
        if not isinstance(settings, SettingsIoT):
            raise ValueError(f"Settings must be an instance of SettingsIoT: '{settings}'.")

        self.merge_settings_from_dict(settings.model_dump(exclude_none=True, exclude_unset=True))

    def merge_settings_from_dict(self, data: dict) -> None:
        """Merges the provided dictionary data into the current instance.

        Args:
            data (dict): Dictionary containing field values to merge into the
                current settings instance.

        Raises:
            ValidationError: If the data contains invalid values for the defined fields.

        Example:
            >>> config = get_config()
            >>> config.merge_settings_from_dict({"compaction": {"interval_sec": 600}})
        """
        self._setup(**merge_models(self, data))

    def reset_settings(self) -> None:
        """Reset all changed settings to environment/config file defaults."""
        self._setup()

    def _update_data_folder_path(self) -> None:
        """Updates path to the data directory."""
        # From Settings
        if data_dir := self.general.data_folder_path:
            try:
                data_dir.mkdir(parents=True, exist_ok=True)
                return
            except OSError as e:
                logger.warning(f"Could not setup data dir '{data_dir}': {e}")
        # From IOTSTORE_DIR env
        if env_dir := os.getenv(self.IOTSTORE_DIR):
            try:
                data_dir = Path(env_dir).resolve()
                data_dir.mkdir(parents=True, exist_ok=True)
                self.general.data_folder_path = data_dir
                return
            except OSError as e:
                logger.warning(f"Could not setup data dir '{env_dir}': {e}")
        # From platform specific default path
        try:
            data_dir = Path(user_data_dir(self.APP_NAME, self.APP_AUTHOR))
            data_dir.mkdir(parents=True, exist_ok=True)
            self.general.data_folder_path = data_dir
            return
        except OSError as e:
            logger.warning(f"Could not setup data dir: {e}")
        # Current working directory
        self.general.data_folder_path = Path.cwd()

    @classmethod
    def _get_config_file_path(cls) -> tuple[Path, bool]:
        """Finds a valid configuration file or returns the desired path for a new config file.

        Returns:
            tuple[Path, bool]: The path to the configuration file and if the file already exists.
        """
        config_dirs = []
        env_base_dir = os.getenv(cls.IOTSTORE_DIR)
        env_config_dir = os.getenv(cls.IOTSTORE_CONFIG_DIR)
        env_dir = get_absolute_path(env_base_dir, env_config_dir)
        logger.debug(f"Environment config dir: '{env_dir}'")
        if env_dir is not None:
            config_dirs.append(env_dir.resolve())
        config_dirs.append(Path(user_config_dir(cls.APP_NAME, cls.APP_AUTHOR)))
        config_dirs.append(Path.cwd())
        for cdir in config_dirs:
            cfile = cdir.joinpath(cls.CONFIG_FILE_NAME)
            if cfile.exists():
                logger.debug(f"Found config file: '{cfile}'")
                return cfile, True
        return config_dirs[0].joinpath(cls.CONFIG_FILE_NAME), False

    def to_config_file(self) -> None:
        """Saves the current configuration to the configuration file.

        Raises:
            ValueError: If the configuration file path is not specified.
        """
        if not self.general.config_file_path:
            raise ValueError("Configuration file path unknown.")
        with self.general.config_file_path.open("w", encoding=self.ENCODING, newline="\n") as f_out:
            f_out.write(self.model_dump_json(indent=4))


def get_config() -> ConfigIoT:
    """Gets the telemetry store configuration data."""
    return ConfigIoT()
