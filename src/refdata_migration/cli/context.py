"""State shared by every command of one CLI invocation."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from refdata_migration.client.exceptions import ConfigurationError
from refdata_migration.client.store_client import RecordStoreClient
from refdata_migration.config import MigrationConfig, load_config_from_yaml
from refdata_migration.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Lazily loaded configuration plus one client per store.

    ``log_level`` and ``log_file`` come from the command line and, when set,
    win over the ``logging`` section of the configuration file. Clients are
    bound to the event loop that first used them, so close them (``aclose``)
    before that loop ends.
    """

    config_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None

    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _clients: dict[str, RecordStoreClient] = field(default_factory=dict, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """The parsed configuration; raises ConfigurationError when unusable."""
        if self._config is not None:
            return self._config

        if self.config_path is None:
            raise ConfigurationError(
                "No configuration file given; pass --config or set REFDATA_BRIDGE_CONFIG"
            )
        try:
            config = load_config_from_yaml(self.config_path)
        except (FileNotFoundError, ValidationError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(str(e)) from e

        self._config = config
        self._apply_logging(config)
        logger.debug(
            "configuration_loaded",
            config_path=str(self.config_path),
            source=config.source.label,
            target=config.target.label,
            entity_types=[definition.name for definition in config.entities],
        )
        return config

    def _apply_logging(self, config: MigrationConfig) -> None:
        settings = config.logging
        log_file = self.log_file or settings.file
        configure_logging(
            level=self.log_level or settings.level,
            log_format=settings.format,
            log_file=str(log_file) if log_file else None,
            file_level=settings.file_level,
        )

    def _client(self, env: str) -> RecordStoreClient:
        if env not in self._clients:
            self._clients[env] = RecordStoreClient.from_config(self.config, env)
        return self._clients[env]

    @property
    def source_client(self) -> RecordStoreClient:
        return self._client("source")

    @property
    def target_client(self) -> RecordStoreClient:
        return self._client("target")

    async def aclose(self) -> None:
        """Close the clients created so far."""
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.close()
