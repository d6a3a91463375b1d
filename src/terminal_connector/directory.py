"""Container directory: which containers a terminal may be opened in."""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger

from .config import ConnectorConfig
from .devfile import load_descriptor
from .exec.control import ControlChannel


class ContainerDirectory:
    """Resolves terminal targets.

    Targets are the containers declared in the workspace descriptor. When the
    dialect can list running containers, only declared containers that are
    also running are offered; running containers that the descriptor does not
    declare (gateways, sidecars) are never offered.

    Args:
        config: Connector configuration; supplies the descriptor path.
        control: Control channel used to list running containers.
        declared: Declared container names to use instead of reading the
            descriptor (e.g. the machines of a workspace API runtime).
    """

    def __init__(
        self,
        config: ConnectorConfig,
        control: ControlChannel | None = None,
        *,
        declared: Sequence[str] | None = None,
    ):
        self._config = config
        self._control = control
        self._declared = list(declared) if declared is not None else None

    def declared_containers(self) -> list[str]:
        """Names of the descriptor's container components, in document order.

        Raises:
            ConfigurationError: If the descriptor is missing or invalid.
        """
        if self._declared is None:
            descriptor = load_descriptor(self._config.descriptor_path)
            self._declared = descriptor.container_names()
            logger.debug("Declared containers: {}", self._declared)
        return list(self._declared)

    async def candidate_containers(self) -> list[str]:
        """Declared containers that a terminal can be opened in.

        An empty list means there are no candidates; it is not an error.
        """
        declared = self.declared_containers()
        if self._control is None or not self._control.dialect.supports_list:
            return declared

        running = set(await self._control.list_running_containers())
        candidates = [name for name in declared if name in running]
        if not candidates:
            logger.warning("None of the declared containers {} is running", declared)
        return candidates
