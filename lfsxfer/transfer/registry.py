"""
Custom Adapter Registry

Design Decision: Registration
=============================

Options Considered:
1. Adapters register themselves at import time
   - Hidden global state, order depends on imports, hard to test
2. Factory closures per configured name
   - Captures config in closures; nothing to inspect afterwards
3. Explicit registry of immutable definitions
   - (name, direction) -> AdapterDefinition
   - One generic constructor builds an adapter from a definition

Decision: Explicit registry, filled once by configure_custom_adapters()
- The host calls it during startup with its Config
- Definitions are frozen dataclasses, safe to share between workers
- A conflicting declaration is a configuration error that is logged
  and collected, never a crash

Configuration keys (per adapter <name>):
```
<ns>.customtransfer.<name>.path        required, activates the adapter
<ns>.customtransfer.<name>.args        optional, default ""
<ns>.customtransfer.<name>.concurrent  optional boolean, default true
<ns>.customtransfer.<name>.direction   optional upload|download|both, default both
<ns>.customtransfer.<name>.timeout     optional read timeout in seconds
```
"""

import re
import shlex
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .adapter import Direction
from .custom import CustomAdapter
from .errors import ConfigurationError

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdapterDefinition:
    """Immutable description of one configured custom transfer agent."""
    name: str
    path: str
    args: str = ''
    concurrent: bool = True
    direction: Direction = Direction.BOTH
    read_timeout: Optional[float] = None

    @property
    def argv(self) -> List[str]:
        """Executable plus arguments, split with POSIX shell rules."""
        try:
            return [self.path] + shlex.split(self.args)
        except ValueError as e:
            raise ConfigurationError(f"Invalid args for custom transfer {self.name!r}: {e}") from e


class AdapterRegistry:
    """
    Maps (name, direction) to adapter definitions.

    Registration is additive: a different definition for an existing
    (name, direction) is rejected rather than silently replacing it.
    """

    def __init__(self):
        self._definitions: Dict[Tuple[str, Direction], AdapterDefinition] = {}
        self.errors: List[ConfigurationError] = []

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, key: Tuple[str, Direction]) -> bool:
        return key in self._definitions

    def register(self, definition: AdapterDefinition):
        """
        Register a definition for each direction it covers.

        Raises:
            ConfigurationError: on a conflicting existing registration
                (nothing is registered in that case)
        """
        directions = definition.direction.expand()
        for direction in directions:
            existing = self._definitions.get((definition.name, direction))
            if existing is not None and existing != definition:
                raise ConfigurationError(
                    f"Custom transfer {definition.name!r} is already registered for "
                    f"{direction.value} with a different definition"
                )

        for direction in directions:
            self._definitions[(definition.name, direction)] = definition
            logger.debug(f"xfer: registered custom transfer {definition.name!r} for {direction.value}")

    def get(self, name: str, direction: Direction) -> Optional[AdapterDefinition]:
        return self._definitions.get((name, direction))

    def names(self, direction: Direction) -> List[str]:
        """Registered adapter names for a direction, sorted."""
        return sorted(name for name, d in self._definitions if d is direction)

    def definitions(self) -> List[AdapterDefinition]:
        """Distinct definitions, sorted by name."""
        return sorted(set(self._definitions.values()), key=lambda d: (d.name, d.direction.value))

    def new_adapter(self, name: str, direction: Direction, **kwargs) -> CustomAdapter:
        """
        Build a fresh adapter for one worker-pool session.

        Extra keyword arguments (object_path, verifier, shutdown_timeout,
        read_timeout) are passed through to CustomAdapter.

        Raises:
            ConfigurationError: no adapter of that name for that direction
        """
        definition = self.get(name, direction)
        if definition is None:
            raise ConfigurationError(
                f"No custom transfer adapter {name!r} configured for {direction.value}"
            )
        # A per-adapter timeout beats the host-wide one
        if definition.read_timeout is not None or 'read_timeout' not in kwargs:
            kwargs['read_timeout'] = definition.read_timeout
        return CustomAdapter(
            definition.name, direction, definition.argv,
            concurrent=definition.concurrent,
            **kwargs,
        )


def _path_pattern(namespace: str) -> 're.Pattern':
    return re.compile(rf"^{re.escape(namespace.lower())}\.customtransfer\.(.+)\.path$")


def definition_from_config(config: 'Config', name: str) -> AdapterDefinition:
    """
    Read one adapter's keys from the configuration.

    Raises:
        ConfigurationError: if any of the adapter's keys is invalid
    """
    prefix = f"{config.namespace}.customtransfer.{name}"

    path = (config.get(f"{prefix}.path") or '').strip()
    if not path:
        raise ConfigurationError(f"{prefix}.path is empty")

    args = config.get(f"{prefix}.args", '') or ''
    concurrent = config.get_bool(f"{prefix}.concurrent", True)

    raw_direction = config.get(f"{prefix}.direction") or 'both'
    try:
        direction = Direction.parse(raw_direction)
    except ValueError as e:
        raise ConfigurationError(f"{prefix}.direction: {e}") from e

    read_timeout = None
    raw_timeout = config.get(f"{prefix}.timeout")
    if raw_timeout:
        try:
            read_timeout = float(raw_timeout)
        except ValueError:
            raise ConfigurationError(f"{prefix}.timeout: invalid number {raw_timeout!r}") from None
        if read_timeout <= 0:
            raise ConfigurationError(f"{prefix}.timeout must be positive")

    try:
        shlex.split(args)
    except ValueError as e:
        raise ConfigurationError(f"{prefix}.args: {e}") from e

    return AdapterDefinition(
        name=name,
        path=path,
        args=args,
        concurrent=concurrent,
        direction=direction,
        read_timeout=read_timeout,
    )


def configure_custom_adapters(config: 'Config',
                              registry: Optional[AdapterRegistry] = None) -> AdapterRegistry:
    """
    Register every custom adapter declared in the configuration.

    Called once by the host during startup. Problems with individual
    adapters are logged and collected in registry.errors.

    Returns:
        The registry (a new one unless one was passed in)
    """
    if registry is None:
        registry = AdapterRegistry()

    pattern = _path_pattern(config.namespace)
    names = sorted({m.group(1) for m in map(pattern.match, config.keys()) if m})

    for name in names:
        try:
            registry.register(definition_from_config(config, name))
        except ConfigurationError as e:
            logger.warning(f"Ignoring custom transfer {name!r}: {e}")
            registry.errors.append(e)

    logger.debug(f"xfer: configured {len(names)} custom transfer adapter(s)")
    return registry
